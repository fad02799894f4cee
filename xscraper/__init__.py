"""Incremental, crash-safe collection of X (Twitter) posts."""

__version__ = "0.1.0"
