"""Helpers for sqlite3: statement execution, savepoints, transactions, pools and migrations."""

__version__ = "0.1.0"