"""Service-level monitoring helpers."""
