"""Shared configuration settings."""

from .database import DatabaseSettings, create_test_database_url, get_database_settings

__all__ = [
    "DatabaseSettings",
    "create_test_database_url",
    "get_database_settings",
]
