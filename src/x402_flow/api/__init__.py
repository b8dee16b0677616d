"""REST API layer for the facilitator service."""
