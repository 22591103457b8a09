"""Authentication helpers shared by API routes."""
