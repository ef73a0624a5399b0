"""Temporary lock code orchestration for short-term rental bookings."""

__version__ = "0.1.0"
