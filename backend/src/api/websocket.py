"""WebSocket endpoint for live pipeline progress.

Clients join and leave channels explicitly:

    {"action": "join", "channel": "processing:<recordingId>"}
    {"action": "join", "recordingId": "<recordingId>"}
    {"action": "join", "jobId": "<exportJobId>"}
    {"action": "leave", "channel": "export:<jobId>"}

Progress arrives as ``{"channel", "event", "data"}`` messages where
``data`` is ``{recordingId|jobId, progress, status, timestamp}``.
"""

import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from src.api.deps import ProgressHubDep
from src.services.progress_hub import export_channel, processing_channel

router = APIRouter()
logger = logging.getLogger(__name__)

CHANNEL_PREFIXES = ("processing:", "export:")


def resolve_channel(message: dict[str, Any]) -> str | None:
    """Channel named by a client message, or None when it names none."""
    channel = message.get("channel")
    if isinstance(channel, str):
        return channel if channel.startswith(CHANNEL_PREFIXES) else None
    if message.get("recordingId"):
        return processing_channel(str(message["recordingId"]))
    if message.get("jobId"):
        return export_channel(str(message["jobId"]))
    return None


def create_error_message(error_message: str) -> dict[str, Any]:
    return {"type": "error", "message": error_message}


@router.websocket("/ws/progress")
async def progress_socket(websocket: WebSocket, hub: ProgressHubDep) -> None:
    await websocket.accept()
    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                await websocket.send_json(create_error_message("Expected a JSON object"))
                continue
            action = message.get("action")
            channel = resolve_channel(message)
            if action not in ("join", "leave"):
                await websocket.send_json(create_error_message(f"Unknown action: {action}"))
                continue
            if channel is None:
                await websocket.send_json(create_error_message("Missing or invalid channel"))
                continue
            if action == "join":
                hub.join(channel, websocket)
                await websocket.send_json({"type": "joined", "channel": channel})
            else:
                hub.leave(channel, websocket)
                await websocket.send_json({"type": "left", "channel": channel})
    except WebSocketDisconnect:
        logger.debug("Progress socket disconnected")
    finally:
        hub.leave_all(websocket)
