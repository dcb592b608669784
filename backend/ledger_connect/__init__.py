"""Ledger Connect: credential lifecycle, webhook trust and tenancy for accounting integrations."""

__version__ = "0.1.0"
