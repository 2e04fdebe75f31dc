"""Proposer, critic and arbitrator reasoning over advisor context."""
