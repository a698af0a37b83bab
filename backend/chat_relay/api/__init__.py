"""
API module for the chat relay.
"""

from .websocket import websocket_endpoint
from .routes import admin, health, sessions

__all__ = [
    "websocket_endpoint",
    "admin",
    "health",
    "sessions",
]
