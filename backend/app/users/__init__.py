"""Account and presence endpoints."""
