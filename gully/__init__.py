"""Gully sports platform: payments, bookings and payouts backend."""

__version__ = "1.0.0"
