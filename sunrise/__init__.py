"""Sunrise web application backend."""

__version__ = "1.0.0"
