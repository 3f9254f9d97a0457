"""Feature store service."""
