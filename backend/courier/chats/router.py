"""Chat, message and read-state endpoints.

Endpoints:
    POST /chats: Create a direct or group chat
    GET /chats: The caller's chats with participants and last message
    GET /chats/{chat_id}: One chat
    GET /chats/{chat_id}/messages: Ordered message page after a seq
    POST /chats/{chat_id}/messages: Send a message (sequenced and pushed live)
    POST /chats/{chat_id}/ack: Raise the caller's delivery watermark
    GET /chats/{chat_id}/watermark: The caller's delivery watermark
    GET /chats/{chat_id}/seen-by: Participants whose watermark reached a seq

Every endpoint acts as the ``X-User-Id`` caller. Endpoints are plain
functions so FastAPI runs them in its thread pool; the delivery core is
blocking and takes per-chat locks.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from courier.delivery.schemas import AckWatermark
from courier.delivery.service import get_delivery_service
from courier.identity import current_user_id

from .schemas import AckRequest, ChatCreate, MessageCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["chats"])


@router.post("", status_code=201)
def create_chat(body: ChatCreate, user_id: str = Depends(current_user_id)) -> JSONResponse:
    """Create a chat between the caller and ``participantIds``.

    A one-to-one chat (``isGroup`` false) must end up with exactly two
    distinct participants.

    Returns:
        The created chat (201 Created).
    """
    chat = get_delivery_service().create_chat(
        user_id, body.participantIds, is_group=body.isGroup, name=body.name
    )
    return JSONResponse(chat.model_dump(mode="json"), status_code=201)


@router.get("")
def list_chats(user_id: str = Depends(current_user_id)) -> JSONResponse:
    """List the caller's chats, most recently active first."""
    chats = get_delivery_service().list_chats(user_id)
    return JSONResponse([c.model_dump(mode="json") for c in chats])


@router.get("/{chat_id}")
def get_chat(chat_id: str, user_id: str = Depends(current_user_id)) -> JSONResponse:
    chat = get_delivery_service().get_chat(user_id, chat_id)
    return JSONResponse(chat.model_dump(mode="json"))


@router.get("/{chat_id}/messages")
def list_messages(
    chat_id: str,
    after: int = Query(0, ge=0, description="Return messages with seq greater than this"),
    limit: Optional[int] = Query(None, ge=1, description="Page size (capped by the server)"),
    user_id: str = Depends(current_user_id),
) -> JSONResponse:
    """Read an ordered page of the chat log.

    Args:
        chat_id: The chat.
        after: Exclusive lower seq bound (0 = from the beginning).
        limit: Page size; clamped to ``delivery.catch_up_max_limit``.

    Returns:
        A catch-up page. When ``truncated`` is true, request again with
        ``after=cursor`` for the rest.

    Example:
        GET /chats/abc/messages?after=0&limit=100
    """
    page = get_delivery_service().catch_up(user_id, chat_id, after, limit)
    return JSONResponse(page.model_dump(mode="json"))


@router.post("/{chat_id}/messages", status_code=201)
def send_message(
    chat_id: str, body: MessageCreate, user_id: str = Depends(current_user_id)
) -> JSONResponse:
    """Send a message as the caller.

    Retrying with the same ``clientMessageId`` returns the original message
    instead of sequencing a duplicate.
    """
    message = get_delivery_service().send_message(
        chat_id, user_id, body.content, client_message_id=body.clientMessageId
    )
    logger.info("[chats] %s sent seq %d in chat %s", user_id, message.seq, chat_id)
    return JSONResponse(message.model_dump(mode="json"), status_code=201)


@router.post("/{chat_id}/ack")
def ack(chat_id: str, body: AckRequest, user_id: str = Depends(current_user_id)) -> JSONResponse:
    """Acknowledge delivery up to ``seq``; lower acks leave the watermark as is."""
    stored = get_delivery_service().ack(user_id, chat_id, body.seq)
    return JSONResponse(AckWatermark(userId=user_id, chatId=chat_id, seq=stored).model_dump())


@router.get("/{chat_id}/watermark")
def get_watermark(chat_id: str, user_id: str = Depends(current_user_id)) -> JSONResponse:
    seq = get_delivery_service().watermark(user_id, chat_id)
    return JSONResponse(AckWatermark(userId=user_id, chatId=chat_id, seq=seq).model_dump())


@router.get("/{chat_id}/seen-by")
def seen_by(
    chat_id: str,
    seq: int = Query(..., ge=1),
    user_id: str = Depends(current_user_id),
) -> JSONResponse:
    user_ids = get_delivery_service().seen_by(user_id, chat_id, seq)
    return JSONResponse({"chatId": chat_id, "seq": seq, "userIds": user_ids})
