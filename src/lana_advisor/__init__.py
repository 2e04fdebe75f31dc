"""Deferred enrichment and reasoning task engine for the Lana advisor."""

__version__ = "0.3.0"
