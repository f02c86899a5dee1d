"""Subscription Ledger - authoritative subscription state.

SubscriptionPeriod records are append-only: every successful payment appends
exactly one period (unique on source_payment_id). A user's current period is
the one with the latest expires_at. Activity is derived:

    active(user, now) == current.status == "active" and now < current.expires_at + grace

Stacking: a new period starts at the later of (now, current.expires_at) when
the current period is still active, so successive purchases extend access
instead of overlapping. Each period records the period it was stacked on
(base_period_id); the unique (user_id, base_period_id) index linearises
concurrent appends for the same user, and the loser re-reads and retries.

The user document's embedded ``subscription`` is an advisory snapshot kept in
step by this module; it is never consulted for authorization decisions.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, PeriodStatus, SubscriptionPeriod, SubscriptionStatus
from services.errors import ConflictError
from utils.audit import SYSTEM_ACTOR, create_audit_log
from utils.dates import ensure_utc

logger = logging.getLogger(__name__)

SUBSCRIPTION_PRICE = int(os.getenv("SUBSCRIPTION_PRICE", "10"))
SUBSCRIPTION_DURATION = timedelta(hours=int(os.getenv("SUBSCRIPTION_DURATION_HOURS", "24")))
GRACE_PERIOD = timedelta(minutes=int(os.getenv("SUBSCRIPTION_GRACE_MINUTES", "30")))
MAX_APPEND_ATTEMPTS = 5
NO_BASE_PERIOD = "none"


def is_period_active(period: Optional[Dict], now: datetime, grace: timedelta = GRACE_PERIOD) -> bool:
    """Activity formula for a single period document."""
    if not period:
        return False
    if period.get("status") != PeriodStatus.ACTIVE.value:
        return False
    return now < ensure_utc(period["expires_at"]) + grace


def is_period_lapsed(period: Dict, now: datetime, grace: timedelta = GRACE_PERIOD) -> bool:
    """True once the grace window has fully elapsed (what the sweeper acts on)."""
    return ensure_utc(period["expires_at"]) + grace < now


def stacked_window(
    current: Optional[Dict],
    now: datetime,
    duration: timedelta = SUBSCRIPTION_DURATION,
) -> Tuple[datetime, datetime]:
    """Window for a new period given the user's current period."""
    starts_at = now
    if is_period_active(current, now):
        starts_at = max(now, ensure_utc(current["expires_at"]))
    return starts_at, starts_at + duration


class SubscriptionLedger:
    """Reads and appends subscription periods; owns the user snapshot."""

    async def current_period(self, user_id: str) -> Optional[Dict]:
        db = database.get_db()
        return await db.subscription_periods.find_one(
            {"user_id": user_id},
            {"_id": 0},
            sort=[("expires_at", -1)],
        )

    async def period_for_payment(self, source_payment_id: str) -> Optional[Dict]:
        db = database.get_db()
        return await db.subscription_periods.find_one(
            {"source_payment_id": source_payment_id}, {"_id": 0}
        )

    async def is_active(self, user_id: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return is_period_active(await self.current_period(user_id), now)

    async def get_status(self, user_id: str, now: Optional[datetime] = None) -> Dict:
        """Subscription status as shown to the client."""
        now = now or datetime.now(timezone.utc)
        period = await self.current_period(user_id)
        if not period:
            return {
                "is_active": False,
                "expires_at": None,
                "grace_until": None,
                "seconds_remaining": 0,
            }
        expires_at = ensure_utc(period["expires_at"])
        active = is_period_active(period, now)
        return {
            "is_active": active,
            "expires_at": expires_at,
            "grace_until": expires_at + GRACE_PERIOD,
            "seconds_remaining": max(0, int((expires_at - now).total_seconds())) if active else 0,
        }

    async def extend_or_create(
        self,
        user_id: str,
        duration: timedelta,
        source_payment_id: str,
        now: Optional[datetime] = None,
    ) -> Dict:
        """
        Append the period paid for by ``source_payment_id``.

        Idempotent per payment: if a period for the payment already exists it
        is returned unchanged. Only the Payment Reconciler calls this.
        """
        db = database.get_db()
        now = now or datetime.now(timezone.utc)

        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            existing = await self.period_for_payment(source_payment_id)
            if existing:
                logger.info(
                    "LEDGER_PERIOD_EXISTS user_id=%s source_payment_id=%s period_id=%s",
                    user_id, source_payment_id, existing["period_id"],
                )
                return existing

            current = await self.current_period(user_id)
            starts_at, expires_at = stacked_window(current, now, duration)
            period = SubscriptionPeriod(
                user_id=user_id,
                starts_at=starts_at,
                expires_at=expires_at,
                source_payment_id=source_payment_id,
                base_period_id=current["period_id"] if current else NO_BASE_PERIOD,
            )
            doc = period.model_dump()
            doc["status"] = PeriodStatus.ACTIVE.value
            try:
                await db.subscription_periods.insert_one(doc)
            except DuplicateKeyError:
                # Lost a race: either the same payment was applied concurrently
                # or another period was stacked on the same base.
                logger.info(
                    "LEDGER_APPEND_CONFLICT user_id=%s source_payment_id=%s attempt=%s",
                    user_id, source_payment_id, attempt,
                )
                continue

            doc.pop("_id", None)
            logger.info(
                "LEDGER_PERIOD_APPENDED user_id=%s period_id=%s starts_at=%s expires_at=%s stacked=%s",
                user_id, period.period_id, starts_at.isoformat(), expires_at.isoformat(),
                starts_at > now,
            )
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_ACTIVATED,
                actor_id=SYSTEM_ACTOR,
                user_id=user_id,
                resource_type="subscription_period",
                resource_id=period.period_id,
                after_state={"starts_at": starts_at.isoformat(), "expires_at": expires_at.isoformat()},
                metadata={"source_payment_id": source_payment_id, "base_period_id": doc["base_period_id"]},
            )
            return doc

        raise ConflictError(
            f"Could not append subscription period for user {user_id} after {MAX_APPEND_ATTEMPTS} attempts"
        )

    async def deactivate_if_unchanged(
        self,
        period_id: str,
        expected_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-swap deactivation; fails harmlessly if the period changed."""
        db = database.get_db()
        now = now or datetime.now(timezone.utc)
        result = await db.subscription_periods.update_one(
            {
                "period_id": period_id,
                "status": PeriodStatus.ACTIVE.value,
                "expires_at": expected_expires_at,
            },
            {"$set": {"status": PeriodStatus.DEACTIVATED.value, "deactivated_at": now}},
        )
        return result.modified_count == 1

    async def record_activation(self, user_id: str, period: Dict, payment_ref: Optional[str]) -> bool:
        """Move the snapshot forward; never moves expires_at backwards."""
        db = database.get_db()
        expires_at = period["expires_at"]
        result = await db.users.update_one(
            {
                "user_id": user_id,
                "$or": [
                    {"subscription.expires_at": None},
                    {"subscription.expires_at": {"$lt": expires_at}},
                ],
            },
            {
                "$set": {
                    "subscription.status": SubscriptionStatus.ACTIVE.value,
                    "subscription.expires_at": expires_at,
                    "subscription.last_payment_ref": payment_ref,
                }
            },
        )
        return result.modified_count == 1

    async def record_expiry_if_unchanged(self, user_id: str, expected_expires_at: datetime) -> bool:
        """Flip the snapshot to expired only if no renewal has moved expires_at."""
        db = database.get_db()
        result = await db.users.update_one(
            {
                "user_id": user_id,
                "subscription.status": SubscriptionStatus.ACTIVE.value,
                "subscription.expires_at": expected_expires_at,
            },
            {"$set": {"subscription.status": SubscriptionStatus.EXPIRED.value}},
        )
        return result.modified_count == 1


subscription_ledger = SubscriptionLedger()
