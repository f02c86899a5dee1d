"""Expiry Sweeper - downgrades lapsed subscriptions without racing renewals.

Runs on a fixed interval from the scheduler. A period is lapsed once
expires_at + grace < now. Deactivation is a compare-and-swap on
(period_id, status=active, expires_at as read); renewals append a new period
rather than editing the old one, so a renewal that lands mid-sweep always
survives: the sweep re-reads the current period after its CAS and only
downgrades the snapshot / notifies when the lapsed period is still current.

Older lapsed periods that were superseded by a stacked renewal are
deactivated quietly (no notification).
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from database import database
from models import AuditAction, NotificationType, PeriodStatus
from services.notification_sink import NotificationSink, notification_sink
from services.subscription_ledger import GRACE_PERIOD, SubscriptionLedger, is_period_lapsed, subscription_ledger
from utils.audit import SYSTEM_ACTOR, create_audit_log
from utils.dates import ensure_utc

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 500


class ExpirySweeper:
    def __init__(
        self,
        ledger: Optional[SubscriptionLedger] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self.ledger = ledger or subscription_ledger
        self.sink = sink or notification_sink

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Deactivate lapsed periods. Returns the number of users downgraded."""
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        cursor = db.subscription_periods.find(
            {"status": PeriodStatus.ACTIVE.value, "expires_at": {"$lt": now - GRACE_PERIOD}},
            {"_id": 0},
        ).sort("expires_at", 1).limit(SWEEP_BATCH_SIZE)
        candidates = await cursor.to_list(length=SWEEP_BATCH_SIZE)

        downgraded = 0
        for period in candidates:
            try:
                if await self._expire_period(period, now):
                    downgraded += 1
            except Exception as e:
                logger.error(
                    "EXPIRY_SWEEP_PERIOD_FAILED period_id=%s user_id=%s error=%s",
                    period.get("period_id"), period.get("user_id"), e,
                )
        logger.info("EXPIRY_SWEEP_DONE candidates=%s downgraded=%s", len(candidates), downgraded)
        return downgraded

    async def _expire_period(self, period: Dict, now: datetime) -> bool:
        if not is_period_lapsed(period, now):
            return False
        user_id = period["user_id"]
        read_expires_at = period["expires_at"]

        if not await self.ledger.deactivate_if_unchanged(period["period_id"], read_expires_at, now):
            logger.info("EXPIRY_SWEEP_CAS_LOST period_id=%s user_id=%s", period["period_id"], user_id)
            return False

        current = await self.ledger.current_period(user_id)
        if current and current["period_id"] != period["period_id"]:
            if ensure_utc(current["expires_at"]) > ensure_utc(read_expires_at):
                logger.info(
                    "EXPIRY_SWEEP_SUPERSEDED period_id=%s user_id=%s current_period_id=%s",
                    period["period_id"], user_id, current["period_id"],
                )
                return False

        await self.ledger.record_expiry_if_unchanged(user_id, read_expires_at)
        notified = await self.sink.enqueue(
            user_id,
            NotificationType.SUBSCRIPTION_EXPIRED,
            {"expired_at": ensure_utc(read_expires_at).isoformat()},
            idempotency_key=f"subscription_expired:{period['period_id']}",
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_EXPIRED,
            actor_id=SYSTEM_ACTOR,
            user_id=user_id,
            resource_type="subscription_period",
            resource_id=period["period_id"],
            metadata={"expires_at": ensure_utc(read_expires_at).isoformat(), "notified": notified},
        )
        logger.info("SUBSCRIPTION_EXPIRED user_id=%s period_id=%s", user_id, period["period_id"])
        return True


expiry_sweeper = ExpirySweeper()
