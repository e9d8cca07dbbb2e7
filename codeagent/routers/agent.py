from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from codeagent.agent.cancellation import CancellationToken, CancelReason
from codeagent.agent.events import AgentEvent, EventQueueObserver
from codeagent.agent.orchestrator import default_options, format_agent_result, run_agent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["agent"])


class RunRequest(BaseModel):
    prompt: str
    project_root: str = "."
    dry_run: bool = False
    stream: bool = True
    chat_history: list[dict] = []


async def _send(ws: WebSocket, msg_type: str, data: dict | None = None):
    await ws.send_text(json.dumps({"type": msg_type, **(data or {})}))


async def _stream_run(ws: WebSocket, request: RunRequest, token: CancellationToken):
    """Run one agent task, forwarding observer events until it finishes."""
    prompt = request.prompt.strip()
    project_root = Path(request.project_root).expanduser()
    if not prompt:
        await _send(ws, "error", {"message": "Empty prompt"})
        return
    if not project_root.is_dir():
        await _send(ws, "error", {"message": f"Project root not found: {project_root}"})
        return

    queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
    options = default_options(
        dry_run=request.dry_run,
        chat_history=request.chat_history,
        observer=EventQueueObserver(queue),
        cancel_token=token,
        stream=request.stream,
    )
    task = asyncio.create_task(run_agent(prompt, project_root, options))

    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                event = getter.result()
                await _send(ws, event.type, event.data)
                continue
            getter.cancel()
            break
        while not queue.empty():
            event = queue.get_nowait()
            await _send(ws, event.type, event.data)
    except BaseException:
        token.cancel(CancelReason.USER)
        task.cancel()
        raise

    result = task.result()
    await _send(
        ws,
        "agent_result",
        {**result.to_dict(), "summary": format_agent_result(result)},
    )


@router.websocket("/ws/agent")
async def agent_ws(ws: WebSocket):
    await ws.accept()

    agent_task: asyncio.Task | None = None
    token = CancellationToken()

    async def run(request: RunRequest, run_token: CancellationToken):
        try:
            await _stream_run(ws, request, run_token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Agent websocket run failed")
            await _send(ws, "error", {"message": str(e)[-1000:]})

    try:
        while True:
            raw = await ws.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await _send(ws, "error", {"message": "Invalid JSON"})
                continue
            if not isinstance(payload, dict):
                continue

            if payload.get("type") == "stop":
                token.cancel(CancelReason.USER)
                continue

            if payload.get("type", "run") != "run":
                continue
            try:
                request = RunRequest.model_validate(payload)
            except ValidationError as e:
                await _send(ws, "error", {"message": str(e)})
                continue

            # One run at a time per connection
            if agent_task and not agent_task.done():
                token.cancel(CancelReason.USER)
                await asyncio.gather(agent_task, return_exceptions=True)

            token = CancellationToken()
            agent_task = asyncio.create_task(run(request, token))

    except WebSocketDisconnect:
        if agent_task and not agent_task.done():
            token.cancel(CancelReason.USER)
            agent_task.cancel()
