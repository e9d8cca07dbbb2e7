"""Action history with undo, persisted through SQLAlchemy.

Each agent run opens a session. Before a mutating tool runs, ``capture``
snapshots the target so the action can later be reverted; commands, reads
and searches are recorded but cannot be undone.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from codeagent.agent.constants import IGNORED_DIRS
from codeagent.agent.state import ActionLog, ActionType, ToolCall
from codeagent.models import ActionRecord, ActionSession, utcnow

logger = logging.getLogger(__name__)

UNDOABLE = {ActionType.WRITE.value, ActionType.EDIT.value, ActionType.DELETE.value, ActionType.MKDIR.value}
SNAPSHOT_TOOLS = {"write_file", "edit_file", "delete_file", "create_directory"}
SNAPSHOT_MAX_BYTES = 1_000_000


@dataclass
class Snapshot:
    previous_existed: bool = False
    previous_content: str | None = None
    was_directory: bool = False


def _resolve(project_root: str | Path, path: str) -> Path | None:
    root = Path(project_root).resolve()
    full = (root / path).resolve()
    if full != root and root not in full.parents:
        return None
    return full


def _snapshot_directory(directory: Path) -> str:
    files: dict[str, str] = {}
    total = 0
    for path in sorted(directory.rglob("*")):
        if not path.is_file() or any(p in IGNORED_DIRS for p in path.parts):
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        total += len(text)
        if total > SNAPSHOT_MAX_BYTES:
            break
        files[path.relative_to(directory).as_posix()] = text
    return json.dumps(files)


class HistoryStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from codeagent.db import async_session

            session_factory = async_session
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def start_session(self, prompt: str, project_root: str) -> str:
        async with self._session_factory() as session:
            record = ActionSession(prompt=prompt, project_root=str(project_root))
            session.add(record)
            await session.commit()
            return record.id

    def capture(self, call: ToolCall, project_root: str | Path) -> Snapshot:
        """Pre-image of the file or directory a mutating call will touch."""
        if call.tool not in SNAPSHOT_TOOLS:
            return Snapshot()
        target = _resolve(project_root, str(call.parameters.get("path") or ""))
        if target is None or not target.exists():
            return Snapshot()
        if target.is_dir():
            content = _snapshot_directory(target) if call.tool == "delete_file" else None
            return Snapshot(previous_existed=True, previous_content=content, was_directory=True)
        try:
            content = target.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            content = None
        return Snapshot(previous_existed=True, previous_content=content)

    async def append(
        self,
        session_id: str,
        call: ToolCall,
        action: ActionLog,
        snapshot: Snapshot | None = None,
    ) -> None:
        snapshot = snapshot or Snapshot()
        async with self._session_factory() as session:
            count = len(
                (
                    await session.execute(
                        select(ActionRecord.id).where(ActionRecord.session_id == session_id)
                    )
                ).all()
            )
            session.add(
                ActionRecord(
                    session_id=session_id,
                    seq=count + 1,
                    type=action.type.value,
                    target=action.target,
                    result=action.result,
                    details=action.details,
                    tool=call.tool,
                    parameters=json.dumps(call.parameters, default=str),
                    previous_existed=snapshot.previous_existed,
                    previous_content=snapshot.previous_content,
                    was_directory=snapshot.was_directory,
                )
            )
            await session.commit()

    async def end_session(self, session_id: str) -> None:
        async with self._session_factory() as session:
            record = await session.get(ActionSession, session_id)
            if record is None:
                return
            record.status = "ended"
            record.ended_at = utcnow()
            await session.commit()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def recent_sessions(self, limit: int = 20) -> list[dict]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActionSession).order_by(ActionSession.started_at.desc()).limit(limit)
            )
            sessions = result.scalars().all()
            out = []
            for s in sessions:
                actions = (
                    await session.execute(
                        select(ActionRecord).where(ActionRecord.session_id == s.id)
                    )
                ).scalars().all()
                out.append(
                    {
                        "id": s.id,
                        "prompt": s.prompt,
                        "project_root": s.project_root,
                        "status": s.status,
                        "started_at": s.started_at.isoformat(),
                        "actions": len(actions),
                        "undoable": sum(1 for a in actions if self._can_undo(a)),
                    }
                )
            return out

    async def latest_session_id(self) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActionSession.id).order_by(ActionSession.started_at.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    @staticmethod
    def _can_undo(record: ActionRecord) -> bool:
        return record.type in UNDOABLE and record.result == "success" and not record.undone

    async def undo_last(self, session_id: str | None = None) -> str | None:
        """Revert the most recent undoable action. Returns its description."""
        session_id = session_id or await self.latest_session_id()
        if session_id is None:
            return None
        async with self._session_factory() as session:
            parent = await session.get(ActionSession, session_id)
            if parent is None:
                return None
            result = await session.execute(
                select(ActionRecord)
                .where(ActionRecord.session_id == session_id)
                .order_by(ActionRecord.seq.desc())
            )
            for record in result.scalars():
                if self._can_undo(record):
                    description = self._revert(record, Path(parent.project_root))
                    record.undone = True
                    await session.commit()
                    return description
        return None

    async def undo_all(self, session_id: str | None = None) -> list[str]:
        session_id = session_id or await self.latest_session_id()
        if session_id is None:
            return []
        reverted: list[str] = []
        while True:
            description = await self.undo_last(session_id)
            if description is None:
                return reverted
            reverted.append(description)

    def _revert(self, record: ActionRecord, project_root: Path) -> str:
        target = _resolve(project_root, record.target)
        if target is None:
            raise ValueError(f"Refusing to undo outside project root: {record.target}")

        if record.type == ActionType.MKDIR.value:
            if record.previous_existed or not target.is_dir():
                return f"Skipped {record.target}"
            if any(target.iterdir()):
                return f"Kept non-empty directory {record.target}"
            target.rmdir()
            return f"Removed directory {record.target}"

        if record.type == ActionType.DELETE.value and record.was_directory:
            target.mkdir(parents=True, exist_ok=True)
            for rel, text in json.loads(record.previous_content or "{}").items():
                path = target / rel
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(text, encoding="utf-8")
            return f"Restored directory {record.target}"

        if record.previous_existed and record.previous_content is not None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(record.previous_content, encoding="utf-8")
            return f"Restored {record.target}"

        if not record.previous_existed and target.is_file():
            target.unlink()
            return f"Deleted {record.target}"

        logger.warning("No pre-image for %s, nothing to restore", record.target)
        return f"Skipped {record.target}"
