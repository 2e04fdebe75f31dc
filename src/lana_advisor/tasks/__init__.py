"""Durable pending-task store and its state machine."""
