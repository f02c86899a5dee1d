"""Chat thread storage.

One thread per match edge, keyed by the edge's match_key (unique index), so
creating it is an upsert that any number of concurrent or repeated match
finalisations can run safely.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from database import database
from services.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000


def validate_message_content(content) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Message content is required", code="INVALID_MESSAGE")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(
            f"Message content must be at most {MAX_MESSAGE_LENGTH} characters",
            code="INVALID_MESSAGE",
        )
    return content


class ChatThreadStore:
    async def ensure_thread(self, match: Dict) -> Dict:
        """Create the thread for ``match`` if absent; return the stored thread."""
        db = database.get_db()
        now = datetime.now(timezone.utc)
        try:
            await db.chat_threads.update_one(
                {"match_key": match["match_key"]},
                {
                    "$setOnInsert": {
                        "chat_id": match["chat_id"],
                        "match_key": match["match_key"],
                        "match_id": match["match_id"],
                        "participants": [match["user_a"], match["user_b"]],
                        "created_at": now,
                    }
                },
                upsert=True,
            )
        except DuplicateKeyError:
            # Concurrent upsert on the same key; the other writer created it
            pass
        return await db.chat_threads.find_one({"match_key": match["match_key"]}, {"_id": 0})

    async def get_thread(self, chat_id: str) -> Optional[Dict]:
        db = database.get_db()
        return await db.chat_threads.find_one({"chat_id": chat_id}, {"_id": 0})

    async def delete_thread(self, match_key: str) -> bool:
        db = database.get_db()
        thread = await db.chat_threads.find_one_and_delete({"match_key": match_key}, {"_id": 0})
        if not thread:
            return False
        await db.messages.delete_many({"chat_id": thread["chat_id"]})
        logger.info("CHAT_THREAD_DELETED chat_id=%s match_key=%s", thread["chat_id"], match_key)
        return True

    async def add_message(self, chat_id: str, sender_id: str, content: str) -> Dict:
        db = database.get_db()
        message = {
            "message_id": str(uuid.uuid4()),
            "chat_id": chat_id,
            "sender_id": sender_id,
            "content": content,
            "created_at": datetime.now(timezone.utc),
        }
        await db.messages.insert_one(message)
        message.pop("_id", None)
        await db.chat_threads.update_one(
            {"chat_id": chat_id},
            {"$set": {"last_message_at": message["created_at"]}},
        )
        return message

    async def list_messages(self, chat_id: str, limit: int = 100) -> List[Dict]:
        db = database.get_db()
        cursor = db.messages.find({"chat_id": chat_id}, {"_id": 0}).sort("created_at", 1).limit(limit)
        return await cursor.to_list(length=limit)


chat_thread_store = ChatThreadStore()
