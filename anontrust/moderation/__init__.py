"""Moderation — the flagged-content queue and its role-gated transitions."""
