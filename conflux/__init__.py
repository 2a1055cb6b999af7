"""Versioned configuration store with label-based release rules and an in-memory Raft log store."""

__version__ = "0.1.0"
__all__ = ["__version__"]