"""Persistence backends."""

from .sqlite_store import SQLiteStore
