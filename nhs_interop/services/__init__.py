"""Integration services.

This package avoids eager imports so schemas can depend on
``nhs_interop.services.identifiers`` without pulling in the HTTP stack.
"""
