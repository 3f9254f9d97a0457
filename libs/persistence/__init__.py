"""Shared database plumbing for backend services."""

from .database import Base, DatabaseManager
from .models import BaseModel

__all__ = [
    "Base",
    "BaseModel",
    "DatabaseManager",
]
