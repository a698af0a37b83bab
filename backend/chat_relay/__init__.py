"""
MindCare chat relay.
Real-time counseling session relay between users, an AI responder and
human counselors.
"""

__version__ = "1.0.0"

# Application metadata
APP_NAME = "MindCare Chat Relay"
APP_DESCRIPTION = "Real-time counseling session relay with AI responder and human escalation"

__all__ = [
    "APP_NAME",
    "APP_DESCRIPTION",
    "__version__",
]
