"""Persistence layer: ORM tables, engine/session helpers and repositories."""
