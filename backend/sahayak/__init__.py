"""Booking lifecycle and payment reconciliation backend."""

__version__ = "1.0.0"
