"""Like/Match Coordinator - directional interest and exactly-once matches.

A match is stored as one canonical edge in ``matches`` keyed by the ordered
pair "<smaller id>:<larger id>" (unique index). Creating it is an insert that
fails with DuplicateKeyError when the edge already exists; the losing side of
a concurrent mutual like treats that as success and sends nothing.

The edge is written first with ``finalized=False``. The follow-up steps
(``matches`` set on both users, chat thread, one notification per user) are
each idempotent and the edge is flagged finalized once they are done. A crash
in between is picked up by ``repair_unfinalized`` from the scheduler.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, InterestOutcome, Match, NotificationType
from services.chat_threads import ChatThreadStore, chat_thread_store
from services.errors import ConflictError, NotFoundError, ValidationError
from services.notification_sink import NotificationSink, notification_sink
from utils.audit import SYSTEM_ACTOR, create_audit_log

logger = logging.getLogger(__name__)

# Edges younger than this are assumed to still be finalizing in their request
REPAIR_MIN_AGE = timedelta(minutes=1)
REPAIR_BATCH_SIZE = 200
MAX_INSERT_ATTEMPTS = 3

NOT_MATCHED = "not-matched"
UNMATCHED = "unmatched"


def match_key(user_id: str, other_id: str) -> str:
    first, second = sorted((user_id, other_id))
    return f"{first}:{second}"


@dataclass
class InterestResult:
    outcome: InterestOutcome
    target_user_id: str
    match_id: Optional[str] = None
    chat_id: Optional[str] = None
    # True only for the call that inserted the match edge
    match_created: bool = False

    @property
    def is_match(self) -> bool:
        return self.match_id is not None


class MatchCoordinator:
    def __init__(
        self,
        chats: Optional[ChatThreadStore] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self.chats = chats or chat_thread_store
        self.sink = sink or notification_sink

    async def record_interest(self, from_user_id: str, to_user_id: str) -> InterestResult:
        if from_user_id == to_user_id:
            raise ValidationError("You cannot like your own profile", code="SELF_INTEREST")

        db = database.get_db()
        if not await db.users.find_one({"user_id": to_user_id}, {"_id": 0, "user_id": 1}):
            raise NotFoundError("User not found", code="USER_NOT_FOUND")

        sent = await db.users.update_one(
            {"user_id": from_user_id, "interest_sent": {"$ne": to_user_id}},
            {"$addToSet": {"interest_sent": to_user_id}},
        )
        newly_recorded = sent.modified_count == 1
        # Always applied so a crash after the first write is healed on replay
        await db.users.update_one(
            {"user_id": to_user_id},
            {"$addToSet": {"interest_received": from_user_id}},
        )

        mutual = await db.users.find_one(
            {"user_id": to_user_id, "interest_sent": from_user_id},
            {"_id": 0, "user_id": 1},
        )
        if not mutual:
            outcome = InterestOutcome.INTEREST_RECORDED if newly_recorded else InterestOutcome.ALREADY_RECORDED
            logger.info(
                "INTEREST_RECORDED from_user_id=%s to_user_id=%s outcome=%s",
                from_user_id, to_user_id, outcome.value,
            )
            return InterestResult(outcome=outcome, target_user_id=to_user_id)

        match, created = await self._ensure_match(from_user_id, to_user_id)
        if created or newly_recorded:
            outcome = InterestOutcome.MATCHED
        else:
            outcome = InterestOutcome.ALREADY_RECORDED
        return InterestResult(
            outcome=outcome,
            target_user_id=to_user_id,
            match_id=match["match_id"],
            chat_id=match.get("chat_id"),
            match_created=created,
        )

    async def _ensure_match(self, user_id: str, other_id: str) -> Tuple[Dict, bool]:
        """Insert the canonical edge if absent. Returns (edge, created)."""
        db = database.get_db()
        key = match_key(user_id, other_id)
        user_a, user_b = key.split(":", 1)

        for _ in range(MAX_INSERT_ATTEMPTS):
            edge = Match(match_key=key, user_a=user_a, user_b=user_b)
            edge.chat_id = edge.match_id
            doc = edge.model_dump()
            try:
                await db.matches.insert_one(doc)
                break
            except DuplicateKeyError:
                existing = await db.matches.find_one({"match_key": key}, {"_id": 0})
                if existing is None:
                    # Edge removed by an unmatch between our insert and read
                    continue
                logger.info("MATCH_EXISTS match_key=%s match_id=%s", key, existing["match_id"])
                if not existing.get("finalized"):
                    await self._finalize(existing)
                return existing, False
        else:
            raise ConflictError(f"Could not create match {key}")

        doc.pop("_id", None)
        logger.info("MATCH_CREATED match_key=%s match_id=%s", key, edge.match_id)
        await create_audit_log(
            action=AuditAction.MATCH_CREATED,
            actor_id=user_id,
            user_id=user_id,
            resource_type="match",
            resource_id=edge.match_id,
            metadata={"user_a": user_a, "user_b": user_b},
        )
        await self._finalize(doc)
        return doc, True

    async def _finalize(self, match: Dict) -> bool:
        """Idempotent follow-up steps for a match edge. False if the edge is gone."""
        db = database.get_db()
        user_a, user_b = match["user_a"], match["user_b"]
        await db.users.update_one({"user_id": user_a}, {"$addToSet": {"matches": user_b}})
        await db.users.update_one({"user_id": user_b}, {"$addToSet": {"matches": user_a}})

        thread = await self.chats.ensure_thread(match)

        # An unmatch may have deleted the edge while the writes above ran
        current = await db.matches.find_one({"match_key": match["match_key"]}, {"_id": 0, "match_id": 1})
        if current is None:
            await self._undo_orphaned_finalize(match)
            return False
        if current["match_id"] != match["match_id"]:
            logger.info(
                "MATCH_SUPERSEDED match_key=%s stale_match_id=%s match_id=%s",
                match["match_key"], match["match_id"], current["match_id"],
            )
            return False
        chat_id = (thread or {}).get("chat_id", match.get("chat_id"))

        for recipient, other in ((user_a, user_b), (user_b, user_a)):
            await self.sink.enqueue(
                recipient,
                NotificationType.MATCH,
                {"match_id": match["match_id"], "user_id": other, "chat_id": chat_id},
                idempotency_key=f"match:{match['match_id']}:{recipient}",
            )

        await db.matches.update_one(
            {"match_id": match["match_id"], "finalized": False},
            {"$set": {"finalized": True, "finalized_at": datetime.now(timezone.utc)}},
        )
        return True

    async def _undo_orphaned_finalize(self, match: Dict) -> None:
        db = database.get_db()
        user_a, user_b = match["user_a"], match["user_b"]
        await db.users.update_one({"user_id": user_a}, {"$pull": {"matches": user_b}})
        await db.users.update_one({"user_id": user_b}, {"$pull": {"matches": user_a}})
        await self.chats.delete_thread(match["match_key"])
        logger.warning(
            "MATCH_FINALIZE_ABANDONED match_key=%s match_id=%s",
            match["match_key"], match["match_id"],
        )

    async def get_match(self, user_id: str, other_id: str) -> Optional[Dict]:
        db = database.get_db()
        return await db.matches.find_one({"match_key": match_key(user_id, other_id)}, {"_id": 0})

    async def unmatch(self, actor_id: str, other_id: str) -> str:
        """Remove the edge and its chat. Returns "unmatched" or "not-matched"."""
        if actor_id == other_id:
            raise ValidationError("You cannot unmatch yourself", code="SELF_INTEREST")
        db = database.get_db()
        key = match_key(actor_id, other_id)
        edge = await db.matches.find_one_and_delete({"match_key": key}, {"_id": 0})
        if not edge:
            # Finish a teardown that stopped after the edge was deleted
            leftover = await db.users.find_one(
                {"user_id": {"$in": [actor_id, other_id]}, "matches": {"$in": [actor_id, other_id]}},
                {"_id": 0, "user_id": 1},
            )
            if leftover:
                await self._teardown(actor_id, other_id, key)
            logger.info("UNMATCH_NOOP actor_id=%s other_id=%s", actor_id, other_id)
            return NOT_MATCHED

        await self._teardown(actor_id, other_id, key)
        logger.info("MATCH_REMOVED match_key=%s match_id=%s actor_id=%s", key, edge["match_id"], actor_id)
        await create_audit_log(
            action=AuditAction.MATCH_REMOVED,
            actor_id=actor_id,
            user_id=actor_id,
            resource_type="match",
            resource_id=edge["match_id"],
            before_state={"user_a": edge["user_a"], "user_b": edge["user_b"]},
        )
        return UNMATCHED

    async def _teardown(self, actor_id: str, other_id: str, key: str) -> None:
        db = database.get_db()
        # Interest is cleared too, otherwise a replayed like would rebuild the match
        for user_id, other in ((actor_id, other_id), (other_id, actor_id)):
            await db.users.update_one(
                {"user_id": user_id},
                {"$pull": {"matches": other, "interest_sent": other, "interest_received": other}},
            )
        await self.chats.delete_thread(key)

    async def list_matches(self, user_id: str) -> List[Dict]:
        db = database.get_db()
        cursor = db.matches.find(
            {"$or": [{"user_a": user_id}, {"user_b": user_id}]},
            {"_id": 0},
        ).sort("created_at", -1)
        edges = await cursor.to_list(length=None)
        return [
            {
                "match_id": edge["match_id"],
                "user_id": edge["user_b"] if edge["user_a"] == user_id else edge["user_a"],
                "chat_id": edge.get("chat_id"),
                "created_at": edge["created_at"],
            }
            for edge in edges
        ]

    async def list_interest_sent(self, user_id: str) -> List[str]:
        return await self._interest_list(user_id, "interest_sent")

    async def list_interest_received(self, user_id: str) -> List[str]:
        return await self._interest_list(user_id, "interest_received")

    async def _interest_list(self, user_id: str, field: str) -> List[str]:
        db = database.get_db()
        user = await db.users.find_one({"user_id": user_id}, {"_id": 0, field: 1})
        if not user:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user.get(field) or []

    async def repair_unfinalized(self, now: Optional[datetime] = None) -> int:
        """Re-drive follow-up steps for edges left unfinalized by a crash."""
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        cursor = db.matches.find(
            {"finalized": False, "created_at": {"$lt": now - REPAIR_MIN_AGE}},
            {"_id": 0},
        ).limit(REPAIR_BATCH_SIZE)
        edges = await cursor.to_list(length=REPAIR_BATCH_SIZE)

        repaired = 0
        for edge in edges:
            try:
                if not await self._finalize(edge):
                    continue
            except Exception as e:
                logger.error("MATCH_REPAIR_FAILED match_id=%s error=%s", edge.get("match_id"), e)
                continue
            repaired += 1
            await create_audit_log(
                action=AuditAction.MATCH_REPAIRED,
                actor_id=SYSTEM_ACTOR,
                resource_type="match",
                resource_id=edge["match_id"],
                metadata={"match_key": edge["match_key"]},
            )
        if edges:
            logger.info("MATCH_REPAIR_DONE candidates=%s repaired=%s", len(edges), repaired)
        return repaired


match_coordinator = MatchCoordinator()
