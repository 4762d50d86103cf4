"""Merchant M-Pesa payment requests and callback reconciliation."""

__version__ = "1.0.0"
