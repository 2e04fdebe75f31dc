"""Heartbeat-driven processing of deferred tasks."""
