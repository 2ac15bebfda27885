"""API routes for the integration core."""
