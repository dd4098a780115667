"""Guardrailed action queue for paid search accounts."""

__version__ = "0.1.0"
