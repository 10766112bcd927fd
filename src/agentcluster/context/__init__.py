"""Upstream context: persisted task outputs and prompt rendering."""
