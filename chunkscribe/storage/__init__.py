"""Durable snapshot storage, the explicit-save gateway and autosave."""
