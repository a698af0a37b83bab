"""
Admin API routes: relay statistics and responder diagnostics.
"""
from fastapi import APIRouter, Depends
from typing import Any, Dict
import logging

from ...models.schemas import Identity
from ...relay import RelayEngine
from ...services.auth_service import RoleChecker
from .sessions import get_engine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/stats")
async def get_stats(
    identity: Identity = Depends(RoleChecker("view_stats")),
    engine: RelayEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Process-local relay counters, connection counts and responder state."""
    return engine.stats()


@router.get("/test/responder")
async def test_responder(
    identity: Identity = Depends(RoleChecker("test_responder")),
    engine: RelayEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Send a connection test payload to the responder webhook."""
    logger.info(f"Responder connection test requested by {identity.label}")
    result = await engine.responder.test_connection()
    return {**result, "circuit": engine.responder.circuit_state}
