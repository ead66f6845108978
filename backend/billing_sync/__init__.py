"""Billing Sync: reconciles Stripe billing webhooks into local subscription state."""

__version__ = "0.1.0"
