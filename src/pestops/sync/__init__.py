"""Periodic synchronization with external providers."""
