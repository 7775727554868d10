"""Progression — XP, levels, streaks, badges, and the trust score."""
