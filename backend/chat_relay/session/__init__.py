"""
Session management package.
Provides the session store abstraction for the durable transcript record.
"""
from .session_store import SessionStore
from .in_memory_session_store import InMemorySessionStore
from .http_session_store import HttpSessionStore


def create_session_store(
    store_type: str = "http",
    **kwargs
) -> SessionStore:
    """
    Factory function to create session store.

    Args:
        store_type: Type of store ('http' or 'in_memory')
        **kwargs: Store-specific configuration

    Returns:
        SessionStore instance

    Examples:
        # Backend API store
        store = create_session_store(
            'http',
            base_url='http://backend:8000/api',
            token='service-token',
            timeout=10
        )

        # In-memory store
        store = create_session_store('in_memory')
    """
    if store_type == "in_memory":
        return InMemorySessionStore()

    elif store_type == "http":
        return HttpSessionStore(**kwargs)

    else:
        raise ValueError(f"Unknown session store type: {store_type}")


__all__ = [
    'SessionStore',
    'InMemorySessionStore',
    'HttpSessionStore',
    'create_session_store',
]
