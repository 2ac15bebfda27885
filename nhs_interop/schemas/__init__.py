"""Pydantic schemas for inbound payloads and API responses."""
