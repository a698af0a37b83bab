"""
Session API routes for staff dashboards and transcript access.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from typing import Any, Dict
import logging

from ...models.schemas import CloseSessionRequest, Identity
from ...relay import RelayEngine
from ...services.auth_service import RoleChecker, get_current_identity

logger = logging.getLogger(__name__)

router = APIRouter()


def get_engine(request: Request) -> RelayEngine:
    """Get the relay engine from app state."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Relay not initialized")
    return engine


@router.get("/active")
async def list_active_sessions(
    identity: Identity = Depends(RoleChecker("list_active_sessions")),
    engine: RelayEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    List open and escalated sessions assigned to the calling staff member.
    """
    sessions = await engine.list_active_sessions(identity)
    return {
        "sessions": [
            {k: v for k, v in s.to_client().items() if k != "messages"}
            for s in sessions
        ],
        "count": len(sessions)
    }


@router.get("/{session_id}/history")
async def get_session_history(
    session_id: str,
    identity: Identity = Depends(RoleChecker("view_history")),
    engine: RelayEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    Get a session transcript.

    Available to the session owner and to staff.
    """
    session = await engine.get_history(identity, session_id)
    return session.to_client()


@router.post("/{session_id}/close")
async def close_session(
    session_id: str,
    request: CloseSessionRequest,
    identity: Identity = Depends(get_current_identity),
    engine: RelayEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    Close a session from the staff dashboard.

    Takes the same path as the ``close_session`` socket event, so connected
    participants receive ``session_closed``.
    """
    await engine.close_session(
        identity,
        session_id,
        summary=request.summary,
        rating=request.rating,
        feedback=request.feedback
    )
    return {"success": True, "sessionId": session_id, "status": "closed"}
