"""
Relay data models.
"""
from .message import Message, Sender
from .session import Session, SessionStatus, SessionType
from .schemas import Identity, Priority, ResponderReply, Role

__all__ = [
    'Message',
    'Sender',
    'Session',
    'SessionStatus',
    'SessionType',
    'Identity',
    'Priority',
    'ResponderReply',
    'Role',
]
