"""Offline-first synchronization engine for field collection data."""

__version__ = "0.1.0"
