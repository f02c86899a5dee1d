"""Chat Routes - chat initiation and messaging between matched users.

Endpoints:
- POST /api/chats - Open the chat with a match
- POST /api/chats/{chat_id}/messages - Send a message
- GET /api/chats/{chat_id}/messages - List messages (participants only)
"""
from fastapi import APIRouter, Request
from pydantic import BaseModel
from services.interactions import interaction_service
from middleware import require_auth
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/chats", tags=["chats"])


class InitiateChatRequest(BaseModel):
    target_user_id: str


class SendMessageRequest(BaseModel):
    content: str


@router.post("")
async def initiate_chat(request: Request, body: InitiateChatRequest):
    user = await require_auth(request)
    thread = await interaction_service.initiate_chat(user["user_id"], body.target_user_id)
    return {"chat": thread}


@router.post("/{chat_id}/messages")
async def send_message(request: Request, chat_id: str, body: SendMessageRequest):
    user = await require_auth(request)
    message = await interaction_service.send_message(user["user_id"], chat_id, body.content)
    return {"message": message}


@router.get("/{chat_id}/messages")
async def list_messages(request: Request, chat_id: str, limit: int = 100):
    user = await require_auth(request)
    limit = max(1, min(limit, 200))
    messages = await interaction_service.list_messages(user["user_id"], chat_id, limit=limit)
    return {"messages": messages}
