"""Metered execution core: quota ledger, credit ledger, job registry and feature gate."""

__version__ = "0.3.0"
