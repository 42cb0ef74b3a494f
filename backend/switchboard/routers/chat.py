"""
chat.py – streaming chat endpoints.

POST /api/chat/stream              – Server-Sent Events stream of reply deltas
POST /api/chat/cancel/{request_id} – cancel an in-flight stream
POST /api/chat/new                 – start a fresh conversation on the active provider
"""
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..deps import get_chat, http_error
from ..errors import ErrorCategory, ProviderError, StreamCancelled, describe_error
from ..services.chat_service import ChatService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/chat", tags=["chat"])


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=32000)
    request_id: Optional[str] = Field(None, max_length=128)


def _event(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@router.post("/stream")
async def chat_stream(req: ChatRequest, request: Request, chat: ChatService = Depends(get_chat)):
    """Stream the reply token-by-token via Server-Sent Events.

    The first event carries the request_id used by /api/chat/cancel/{request_id}.
    The stream ends with exactly one of: done, cancelled, error.
    """
    if chat.manager.get_active_provider() is None:
        raise HTTPException(status_code=503, detail="No active provider. Select one first.")
    try:
        request_id, _token = chat.open_request(req.request_id)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    async def event_generator():
        yield _event({"type": "meta", "request_id": request_id})

        full_reply: list[str] = []
        try:
            async for delta in chat.stream_reply(req.message, request_id):
                full_reply.append(delta)
                yield _event({"type": "token", "text": delta})
                if await request.is_disconnected():
                    logger.info("Client disconnected, cancelling %s", request_id)
                    chat.cancel(request_id, "client disconnected")
        except StreamCancelled:
            yield _event({"type": "cancelled", "partial": "".join(full_reply)})
            return
        except ProviderError as exc:
            logger.warning("Streaming request %s failed: %s", request_id, exc)
            yield _event({"type": "error", **describe_error(exc).to_dict()})
            return
        except Exception as exc:
            logger.exception("Unexpected error in streaming request %s", request_id)
            yield _event({"type": "error", **describe_error(exc, ErrorCategory.UNKNOWN).to_dict()})
            return

        yield _event({"type": "done", "answer": "".join(full_reply)})

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",   # disable nginx buffering
            "X-Request-Id": request_id,
        },
    )


@router.post("/cancel/{request_id}")
async def cancel_stream(request_id: str, chat: ChatService = Depends(get_chat)):
    if request_id not in chat.in_flight:
        raise HTTPException(status_code=404, detail=f"No in-flight request '{request_id}'")
    return {"request_id": request_id, "cancelled": chat.cancel(request_id)}


@router.post("/new")
async def new_conversation(chat: ChatService = Depends(get_chat)):
    try:
        await chat.new_conversation()
    except ProviderError as exc:
        raise http_error(exc)
    session = chat.manager.active_session
    return {"session_id": session.id if session else None}
