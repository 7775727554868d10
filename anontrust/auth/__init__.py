"""Auth — role tiers, the permission table, and role grants with audit history."""
