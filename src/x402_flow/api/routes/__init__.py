"""Facilitator route modules."""
