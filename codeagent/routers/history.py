from __future__ import annotations

from fastapi import APIRouter, HTTPException

from codeagent.agent.history import HistoryStore

router = APIRouter(prefix="/history", tags=["history"])

_store = HistoryStore()


@router.get("/sessions")
async def list_sessions(limit: int = 20):
    return await _store.recent_sessions(limit)


@router.post("/sessions/{session_id}/undo")
async def undo_last(session_id: str):
    try:
        description = await _store.undo_last(session_id)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if description is None:
        raise HTTPException(404, "Nothing to undo")
    return {"undone": description}


@router.post("/sessions/{session_id}/undo-all")
async def undo_all(session_id: str):
    try:
        reverted = await _store.undo_all(session_id)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"undone": reverted}
