"""Offline ledger sync - Local SQLite cache of session state and ledger data."""

__version__ = "0.1.0"
