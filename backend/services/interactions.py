"""Gated user interactions.

Each entry point resolves the target user, asks the Capability Gate, and only
then does its own work. Routes call these instead of the coordinator or chat
store directly so no interaction can skip the policy.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from database import database
from models import InteractionAction, NotificationType
from services.capability_gate import CapabilityGate, capability_gate
from services.chat_threads import ChatThreadStore, chat_thread_store, validate_message_content
from services.errors import NotFoundError, ValidationError
from services.match_coordinator import InterestResult, MatchCoordinator, match_coordinator
from services.notification_sink import NotificationSink, notification_sink

logger = logging.getLogger(__name__)


class InteractionService:
    def __init__(
        self,
        gate: Optional[CapabilityGate] = None,
        coordinator: Optional[MatchCoordinator] = None,
        chats: Optional[ChatThreadStore] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self.gate = gate or capability_gate
        self.coordinator = coordinator or match_coordinator
        self.chats = chats or chat_thread_store
        self.sink = sink or notification_sink

    async def like_profile(self, actor_id: str, target_id: str, now: Optional[datetime] = None) -> InterestResult:
        if actor_id == target_id:
            raise ValidationError("You cannot like your own profile", code="SELF_INTEREST")
        await self.gate.enforce(actor_id, InteractionAction.LIKE_PROFILE, target_id, now)
        return await self.coordinator.record_interest(actor_id, target_id)

    async def like_photo(self, actor_id: str, photo_id: str, now: Optional[datetime] = None) -> Dict:
        db = database.get_db()
        photo = await db.photos.find_one({"photo_id": photo_id}, {"_id": 0, "photo_id": 1, "owner_id": 1})
        if not photo:
            raise NotFoundError("Photo not found", code="PHOTO_NOT_FOUND")
        owner_id = photo["owner_id"]
        if owner_id == actor_id:
            raise ValidationError("You cannot like your own photo", code="SELF_LIKE")

        await self.gate.enforce(actor_id, InteractionAction.LIKE_PHOTO, owner_id, now)

        result = await db.photos.update_one(
            {"photo_id": photo_id, "liked_by": {"$ne": actor_id}},
            {"$addToSet": {"liked_by": actor_id}, "$inc": {"like_count": 1}},
        )
        newly_liked = result.modified_count == 1
        if newly_liked:
            await self.sink.enqueue(
                owner_id,
                NotificationType.PHOTO_LIKE,
                {"photo_id": photo_id, "user_id": actor_id},
                idempotency_key=f"photo_like:{photo_id}:{actor_id}",
            )
            logger.info("PHOTO_LIKED photo_id=%s actor_id=%s owner_id=%s", photo_id, actor_id, owner_id)

        updated = await db.photos.find_one({"photo_id": photo_id}, {"_id": 0, "like_count": 1})
        return {
            "photo_id": photo_id,
            "like_count": (updated or {}).get("like_count", 0),
            "already_liked": not newly_liked,
        }

    async def initiate_chat(self, actor_id: str, target_id: str, now: Optional[datetime] = None) -> Dict:
        if actor_id == target_id:
            raise ValidationError("You cannot start a chat with yourself", code="SELF_INTEREST")
        await self.gate.enforce(actor_id, InteractionAction.INITIATE_CHAT, target_id, now)

        match = await self.coordinator.get_match(actor_id, target_id)
        if not match:
            raise NotFoundError("You can only chat with your matches", code="MATCH_NOT_FOUND")
        thread = await self.chats.ensure_thread(match)
        logger.info("CHAT_OPENED chat_id=%s actor_id=%s", thread["chat_id"], actor_id)
        return thread

    async def send_message(
        self,
        actor_id: str,
        chat_id: str,
        content: str,
        now: Optional[datetime] = None,
    ) -> Dict:
        thread = await self.chats.get_thread(chat_id)
        if not thread or actor_id not in thread.get("participants", []):
            raise NotFoundError("Chat not found", code="CHAT_NOT_FOUND")
        recipient_id = next(p for p in thread["participants"] if p != actor_id)

        await self.gate.enforce(actor_id, InteractionAction.SEND_MESSAGE, recipient_id, now)
        content = validate_message_content(content)

        message = await self.chats.add_message(chat_id, actor_id, content)
        await self.sink.enqueue(
            recipient_id,
            NotificationType.NEW_MESSAGE,
            {"chat_id": chat_id, "message_id": message["message_id"], "sender_id": actor_id},
        )
        return message

    async def list_messages(self, actor_id: str, chat_id: str, limit: int = 100) -> List[Dict]:
        thread = await self.chats.get_thread(chat_id)
        if not thread or actor_id not in thread.get("participants", []):
            raise NotFoundError("Chat not found", code="CHAT_NOT_FOUND")
        return await self.chats.list_messages(chat_id, limit=limit)


interaction_service = InteractionService()
