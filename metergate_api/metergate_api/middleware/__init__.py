"""Starlette middleware for authentication and request logging."""
