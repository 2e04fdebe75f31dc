"""Delivery of completed answers to requesters."""
