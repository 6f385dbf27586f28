"""CraftCtrl - Administrative API (users, grants, roles)."""
