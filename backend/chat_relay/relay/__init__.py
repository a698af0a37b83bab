"""
Real-time relay: connection gateway and session relay engine.
"""
from .gateway import STAFF_GROUP, Connection, ConnectionGateway, session_group
from .engine import RelayEngine

__all__ = [
    'STAFF_GROUP',
    'Connection',
    'ConnectionGateway',
    'RelayEngine',
    'session_group',
]
