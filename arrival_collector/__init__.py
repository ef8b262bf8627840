"""Arrival collector - adaptive arrival polling and arrival logging."""

__version__ = "0.1.0"
