from fastapi import APIRouter, HTTPException

from .deps import get_session

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


@router.get("")
async def list_conversations():
    session = get_session()
    return {
        "active_id": session.active_id,
        "conversations": [c.model_dump() for c in session.conversations],
    }


@router.post("")
async def create_conversation():
    session = get_session()
    conv_id = await session.create_new_chat()
    if conv_id is None:
        raise HTTPException(status_code=502, detail=session.error or "Failed to create chat")
    return {"conversation": session.get_conversation(conv_id).model_dump()}


@router.get("/{conv_id}")
async def get_conversation(conv_id: str):
    conv = get_session().get_conversation(conv_id)
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": conv.model_dump()}


@router.post("/{conv_id}/activate")
async def activate_conversation(conv_id: str):
    if not get_session().set_active(conv_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"active_id": conv_id}


@router.delete("/{conv_id}")
async def delete_conversation(conv_id: str):
    session = get_session()
    if session.get_conversation(conv_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if not await session.delete_conversation(conv_id):
        raise HTTPException(status_code=502, detail=session.error or "Failed to delete")
    return {"status": "deleted"}


@router.delete("/{conv_id}/messages/{message_id}")
async def dismiss_error_message(conv_id: str, message_id: str):
    if not get_session().clear_message_error(conv_id, message_id):
        raise HTTPException(status_code=404, detail="Error message not found")
    return {"status": "deleted"}
