"""Persistence contract and implementations."""

from .base import Persistence
from .json_store import JsonFileStore

__all__ = ["Persistence", "JsonFileStore"]
