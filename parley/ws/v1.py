from __future__ import annotations

import asyncio
import logging
from typing import cast

from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect

from parley.api.v1.deps import caller_from_token
from parley.chat.orchestrator import SessionOrchestrator
from parley.chat.turn import TurnRequest
from parley.core.errors import ParleyError
from parley.core.security import JSONValue
from parley.realtime.connections import ConnectionRegistry
from parley.realtime.push import PushChannel, get_push_transport


logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or token == "":
        return None
    return token


def _socket_token(websocket: WebSocket) -> str | None:
    token = _parse_bearer_token(websocket.headers.get("authorization"))
    if token is not None:
        return token
    # Browsers cannot set headers on a websocket handshake.
    raw = websocket.query_params.get("token")
    return raw.strip() if raw and raw.strip() else None


@router.websocket("/ws/v1")
async def ws_v1(websocket: WebSocket) -> None:
    token = _socket_token(websocket)
    caller = caller_from_token(token)
    if caller is None:
        await websocket.close(code=1008)
        return

    registry = ConnectionRegistry()
    transport = get_push_transport()
    record = await asyncio.to_thread(registry.register, caller.id)
    connection_id = record.connection_id

    await websocket.accept()

    send_lock = asyncio.Lock()
    turn_tasks: set[asyncio.Task[None]] = set()
    orchestrator = SessionOrchestrator(
        connections=registry,
        push=PushChannel(registry, transport),
    )

    async def _safe_send_json(frame: dict[str, JSONValue]) -> None:
        async with send_lock:
            await websocket.send_json(frame)

    async def _report_error(session_id: str, message: str) -> None:
        try:
            await _safe_send_json({"type": "assistant.error", "sessionId": session_id, "message": message})
        except (WebSocketDisconnect, RuntimeError, OSError):
            logger.info("socket gone before turn error was sent session=%s", session_id)

    async def _run_turn(request: TurnRequest) -> None:
        try:
            _ = await orchestrator.handle_turn(caller.id, request)
        except ParleyError as e:
            logger.info("turn rejected session=%s err=%s", request.session_id, e)
            await _report_error(request.session_id, str(e))
        except Exception:
            logger.exception("turn crashed session=%s", request.session_id)
            await _report_error(request.session_id, "Unexpected error generating response")

    def _start_turn(frame: dict[str, object]) -> None:
        payload = dict(frame)
        _ = payload.setdefault("connectionId", connection_id)
        request = TurnRequest.from_payload(payload)
        task = asyncio.create_task(_run_turn(request))
        turn_tasks.add(task)
        task.add_done_callback(turn_tasks.discard)

    async with transport.subscribe(connection_id) as messages:

        async def _forward() -> None:
            async for message in messages:
                await _safe_send_json(message)

        forward_task = asyncio.create_task(_forward())
        try:
            await _safe_send_json({"type": "connection.registered", "connectionId": connection_id})
            while True:
                raw = cast(object, await websocket.receive_json())
                if not isinstance(raw, dict):
                    continue
                frame = cast(dict[str, object], raw)
                frame_type = frame.get("type")
                if frame_type == "ping":
                    await _safe_send_json({"type": "pong"})
                elif frame_type == "chat.send":
                    try:
                        _start_turn(frame)
                    except ParleyError as e:
                        await _safe_send_json({"type": "assistant.error", "message": str(e)})
                else:
                    await _safe_send_json({"type": "error", "message": f"unknown frame type: {frame_type}"})
        except WebSocketDisconnect:
            pass
        finally:
            _ = forward_task.cancel()
            _ = await asyncio.gather(forward_task, return_exceptions=True)
            # In-flight turns keep running; their pushes find the connection gone and stop.
            _ = await asyncio.to_thread(registry.deregister, connection_id)
            logger.info("websocket closed connection=%s owner=%s", connection_id, caller.id)
