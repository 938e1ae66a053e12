import asyncio
import base64
import binascii
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..conversation.models import ImageRef
from ..conversation.session import SessionEvent
from ..errors import OCRError
from .deps import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


class SendRequest(BaseModel):
    content: str
    conversation_id: Optional[str] = None
    image: Optional[ImageRef] = None


class OCRRequest(BaseModel):
    filename: str
    data: str  # base64 file content
    content_type: str = "application/octet-stream"


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@router.get("/state")
async def get_state():
    return get_session().snapshot()


@router.post("/send")
async def send_message(req: SendRequest):
    session = get_session()
    if not req.content.strip():
        raise HTTPException(status_code=400, detail="Message content is empty")
    if session.is_generating:
        raise HTTPException(status_code=409, detail="A response is already being generated")
    if req.conversation_id and not session.set_active(req.conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")

    queue: asyncio.Queue[Optional[SessionEvent]] = asyncio.Queue()
    unsubscribe = session.subscribe(queue.put_nowait)
    task = asyncio.create_task(session.send_message(req.content, req.image))
    task.add_done_callback(lambda _: queue.put_nowait(None))

    async def event_stream():
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield _sse(event.to_dict())

            if task.cancelled():
                yield _sse({"type": "done", "reason": "cancelled"})
            elif task.exception() is not None:
                logger.error("Send failed unexpectedly: %s", task.exception())
                yield _sse({"type": "error", "message": str(task.exception())})
            else:
                yield _sse({"type": "done", "conversation_id": task.result()})
        finally:
            unsubscribe()

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@router.post("/ocr")
async def process_image(req: OCRRequest):
    try:
        content = base64.b64decode(req.data, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Image data is not valid base64")
    try:
        text = await get_session().process_image(content, req.filename, req.content_type)
    except OCRError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"text": text}


@router.delete("/error")
async def clear_error():
    get_session().clear_error()
    return {"status": "ok"}
