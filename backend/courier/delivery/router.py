"""WebSocket endpoint for live message delivery.

Protocol Flow:
    1. Client connects to ``/ws?userId=...&lastSeen=<chatId>:<seq>``
       → unknown or missing userId is rejected with close code 1008
       → Server sends: {type: "connected", userId, connectionId, heartbeatTimeout}
       → Server sends one {type: "catch_up", chatId, messages, truncated, cursor, ...}
         per chat with missed messages, then {type: "synced", chats}
    2. Live pushes: {type: "message", ...message}
    3. Client sends: {type: "send", chatId, content, clientMessageId?}
       → Server replies: {type: "sent", chatId, seq, id, clientMessageId}
    4. Client sends: {type: "ack", chatId, seq}
       → Server replies: {type: "watermark", chatId, seq}
    5. Client sends: {type: "catch_up", chatId, fromSeq, limit?}
       → Server replies: {type: "catch_up", ...} (follow ``cursor`` while truncated)
    6. Client sends: {type: "ping"} → Server replies: {type: "pong"}

Any inbound frame counts as a heartbeat. Errors are reported as
``{type: "error", code, error}`` frames and never close the socket.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, WebSocket
from starlette.concurrency import run_in_threadpool

from .connection import ConnectionHandle, Frame
from .errors import DeliveryError, UserNotFound, ValidationError
from .service import DeliveryService, catch_up_frame, get_delivery_service

logger = logging.getLogger(__name__)

router = APIRouter()

# 1008 = Policy Violation, 1011 = Internal Error
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


def parse_last_seen(entries: Optional[List[str]]) -> Dict[str, int]:
    """Parse repeated ``lastSeen=<chatId>:<seq>`` query values.

    Raises:
        ValueError: An entry is malformed or carries a negative seq.
    """
    last_seen: Dict[str, int] = {}
    for entry in entries or []:
        chat_id, sep, seq = entry.rpartition(":")
        if not sep or not chat_id:
            raise ValueError(f"Malformed lastSeen entry: {entry!r}")
        value = int(seq)
        if value < 0:
            raise ValueError(f"Negative lastSeen seq: {entry!r}")
        last_seen[chat_id] = max(value, last_seen.get(chat_id, 0))
    return last_seen


def error_frame(exc: DeliveryError, request_type: Optional[str] = None) -> Frame:
    frame: Frame = {"type": "error", "code": exc.code, "error": exc.message}
    if request_type:
        frame["requestType"] = request_type
    return frame


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} is required")
    return value


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    return value


def _require_int(data: Dict[str, Any], key: str) -> int:
    value = _optional_int(data, key)
    if value is None:
        raise ValidationError(f"{key} is required")
    return value


async def handle_client_frame(
    service: DeliveryService, handle: ConnectionHandle, data: Dict[str, Any]
) -> None:
    """Dispatch one inbound frame; replies are queued on ``handle``."""
    frame_type = data.get("type")
    user_id = handle.user_id

    # --- Heartbeat ---
    if frame_type == "ping":
        handle.enqueue({"type": "pong"})
        return

    try:
        # --- Send a message ---
        if frame_type == "send":
            chat_id = _require_str(data, "chatId")
            content = data.get("content")
            if not isinstance(content, str):
                raise ValidationError("content must be a string")
            client_message_id = data.get("clientMessageId")
            if client_message_id is not None and not isinstance(client_message_id, str):
                raise ValidationError("clientMessageId must be a string")
            message = await run_in_threadpool(
                service.send_message, chat_id, user_id, content, client_message_id
            )
            handle.enqueue({
                "type": "sent",
                "chatId": chat_id,
                "seq": message.seq,
                "id": message.id,
                "clientMessageId": message.clientMessageId,
            })

        # --- Acknowledge up to a seq ---
        elif frame_type == "ack":
            chat_id = _require_str(data, "chatId")
            seq = _require_int(data, "seq")
            stored = await run_in_threadpool(service.ack, user_id, chat_id, seq)
            handle.enqueue({"type": "watermark", "chatId": chat_id, "seq": stored})

        # --- Explicit catch-up (continuation of a truncated page) ---
        elif frame_type == "catch_up":
            chat_id = _require_str(data, "chatId")
            from_seq = _optional_int(data, "fromSeq")
            limit = _optional_int(data, "limit")
            page = await run_in_threadpool(service.catch_up, user_id, chat_id, from_seq, limit)
            handle.enqueue(catch_up_frame(page))

        else:
            raise ValidationError(f"Unknown frame type: {frame_type!r}")

    except DeliveryError as e:
        logger.info(
            "[WS] %s frame from user %s rejected: %s", frame_type, user_id, e.message
        )
        handle.enqueue(error_frame(e, frame_type if isinstance(frame_type, str) else None))


@router.websocket("/ws")
async def websocket_delivery_endpoint(
    websocket: WebSocket,
    userId: Optional[str] = Query(None, description="Trusted user identity"),
    lastSeen: Optional[List[str]] = Query(None, description="Repeated <chatId>:<seq> positions"),
) -> None:
    """WebSocket endpoint delivering every chat of one user.

    Args:
        websocket: The WebSocket connection.
        userId: Identity supplied by the trusted outer layer.
        lastSeen: Client-held positions; chats not listed resume from the
            stored ack watermark.
    """
    service = get_delivery_service()

    if not userId:
        logger.warning("[WS] Rejecting connection without userId")
        await websocket.close(code=CLOSE_POLICY_VIOLATION)
        return

    try:
        last_seen = parse_last_seen(lastSeen)
    except ValueError as e:
        logger.warning(f"[WS] Rejecting connection of {userId}: {e}")
        await websocket.close(code=CLOSE_POLICY_VIOLATION)
        return

    async def close_transport(code: int) -> None:
        await websocket.close(code=code)

    try:
        handle = service.new_connection(userId, websocket.send_json, close_transport=close_transport)
    except UserNotFound:
        logger.warning(f"[WS] Rejecting connection of unknown user {userId}")
        await websocket.close(code=CLOSE_POLICY_VIOLATION)
        return

    await websocket.accept()
    handle.start()
    logger.info(f"[WS] User {userId} connected as {handle.connection_id}")

    try:
        try:
            await run_in_threadpool(service.open_connection, handle, last_seen)
        except DeliveryError as e:
            logger.error(f"[WS] Handshake of {handle.connection_id} for user {userId} failed: {e.message}")
            await service.disconnect(handle, CLOSE_INTERNAL_ERROR)
            return

        # Main frame loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            handle.touch()

            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            try:
                data = json.loads(raw or "")
            except ValueError:
                handle.enqueue(error_frame(ValidationError("Frames must be JSON objects")))
                continue
            if not isinstance(data, dict):
                handle.enqueue(error_frame(ValidationError("Frames must be JSON objects")))
                continue

            logger.debug("[WS] %s received: type=%s", handle.connection_id, data.get("type", "?"))
            await handle_client_frame(service, handle, data)

    finally:
        await service.disconnect(handle)
        logger.info(f"[WS] Connection {handle.connection_id} of user {userId} closed")
