"""Stripe billing webhook processor and credit ledger reconciliation."""

__version__ = "1.0.0"
