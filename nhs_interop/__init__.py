"""Integration core for the national health-data exchange."""
