"""Data enrichment for deferred tasks."""
