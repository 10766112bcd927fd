"""Persistence for the context store (SQLAlchemy async)."""
