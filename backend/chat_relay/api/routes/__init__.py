"""
API routes module initialization.
"""
from . import admin, health, sessions

__all__ = ["admin", "health", "sessions"]
