"""
Chat routes:
- Streaming narration over server-sent events
"""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.concurrency import iterate_in_threadpool

from app.chat_service import chat_stream

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


class ChatRequest(BaseModel):
    message: Optional[str] = None
    conversationHistory: List[dict] = Field(default_factory=list)
    currentData: Optional[dict] = None


def _event(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _close_chunks(chunks) -> None:
    """
    Closes the chat generator, which closes the upstream stream.

    On a cancelled request a worker thread may still be inside next(chunks);
    closing then raises ValueError. The generator is finalized (and closed)
    once that pending step returns and the last reference is dropped.
    """
    try:
        chunks.close()
    except ValueError as e:
        logger.info(f"Chat stream still running on a worker thread; deferring close: {e}")


@router.post("/api/chat/stream")
async def stream_chat_answer(
    req: ChatRequest,
    request: Request,
    x_modelscope_api_key: Optional[str] = Header(None, alias="x-modelscope-api-key"),
):
    if not req.message or not req.message.strip():
        return JSONResponse(status_code=400, content={"success": False, "error": "Message must not be empty"})
    if not x_modelscope_api_key:
        return JSONResponse(status_code=401, content={"success": False, "error": "ModelScope API key not provided"})

    chunks = chat_stream(
        req.message,
        req.conversationHistory,
        req.currentData,
        x_modelscope_api_key,
        llm_config=request.app.state.llm_config,
        stream=request.app.state.chat_stream_fn,
    )

    async def events():
        yield _event({"type": "start"})
        try:
            async for chunk in iterate_in_threadpool(chunks):
                if await request.is_disconnected():
                    logger.info("Chat client disconnected; stopping stream")
                    break
                yield _event({"type": "content", "data": chunk})
            else:
                yield _event({"type": "end"})
        except Exception as e:
            logger.error(f"Chat stream error: {e}")
            yield _event({"type": "error", "error": "Streaming response failed"})
        finally:
            _close_chunks(chunks)

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)
