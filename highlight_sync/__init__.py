"""Incremental highlight synchronization between a reference library and a highlight service."""

__version__ = "0.1.0"
