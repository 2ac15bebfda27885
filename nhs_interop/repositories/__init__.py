"""Persistence adapters: a Protocol, a SQL and an in-memory store per concern."""
