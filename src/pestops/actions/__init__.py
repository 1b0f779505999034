"""Executors for the side effects workflow triggers can run."""
