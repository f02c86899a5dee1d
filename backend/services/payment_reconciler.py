"""Payment Reconciler - applies asynchronous gateway results to the ledger.

Designed as an at-least-once message handler keyed by the immutable
external_reference:

1. Unknown reference   -> acknowledged, no state change (logged as warning).
2. Already settled     -> duplicate delivery; recorded outcome returned, no side effects.
3. Expired/cancelled   -> rejected with REQUEST_EXPIRED, no side effects,
                          unless a period was already written for it: the period
                          is authoritative and the request is completed.
4. Failure result      -> request failed with the gateway's reason + one failure notification.
5. Success result      -> amount checked against the fixed price (mismatch fails the
                          request with AMOUNT_MISMATCH), otherwise:
                          period appended -> request completed -> snapshot -> notification.

Crash safety of step 5: the period is written FIRST and is unique per payment,
so there is never a completed request without a period. Every later step is
idempotent (compare-and-swap on open status, monotonic snapshot, notification
keyed by request_id), so a redelivered callback or the payment-request sweep
finishes a half-applied reconciliation.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from models import (
    AuditAction,
    FailureReason,
    NotificationType,
    PaymentRequestStatus,
    PaymentResult,
    PaymentResultStatus,
    SETTLED_PAYMENT_STATUSES,
)
from services.notification_sink import NotificationSink, notification_sink
from services.payment_requests import PaymentRequestTracker, is_request_stale, payment_request_tracker
from services.subscription_ledger import (
    SUBSCRIPTION_DURATION,
    SUBSCRIPTION_PRICE,
    SubscriptionLedger,
    subscription_ledger,
)
from utils.audit import SYSTEM_ACTOR, create_audit_log

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE = "duplicate"
    UNKNOWN_REFERENCE = "unknown_reference"
    STALE = "stale"


@dataclass
class ReconcileOutcome:
    status: ReconcileStatus
    external_reference: str
    request_id: Optional[str] = None
    request_status: Optional[str] = None
    period_id: Optional[str] = None
    reason: Optional[str] = None


def _recorded(request: Dict, external_reference: str) -> ReconcileOutcome:
    return ReconcileOutcome(
        status=ReconcileStatus.DUPLICATE,
        external_reference=external_reference,
        request_id=request["request_id"],
        request_status=request["status"],
        period_id=request.get("period_id"),
        reason=request.get("failure_reason"),
    )


class PaymentReconciler:
    def __init__(
        self,
        tracker: Optional[PaymentRequestTracker] = None,
        ledger: Optional[SubscriptionLedger] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self.tracker = tracker or payment_request_tracker
        self.ledger = ledger or subscription_ledger
        self.sink = sink or notification_sink

    async def reconcile(self, result: PaymentResult, now: Optional[datetime] = None) -> ReconcileOutcome:
        now = now or datetime.now(timezone.utc)
        ref = result.external_reference
        logger.info(
            "PAYMENT_CALLBACK_RECEIVED external_reference=%s status=%s amount=%s",
            ref, result.status.value, result.amount,
        )

        request = await self.tracker.get_by_external_reference(ref)
        if not request:
            logger.warning("PAYMENT_CALLBACK_UNKNOWN_REFERENCE external_reference=%s", ref)
            return ReconcileOutcome(status=ReconcileStatus.UNKNOWN_REFERENCE, external_reference=ref)

        if request["status"] in SETTLED_PAYMENT_STATUSES:
            logger.info(
                "PAYMENT_CALLBACK_DUPLICATE external_reference=%s request_id=%s status=%s",
                ref, request["request_id"], request["status"],
            )
            return _recorded(request, ref)

        if request["status"] == PaymentRequestStatus.CANCELLED.value or is_request_stale(request, now):
            # A period already written for this request means the payment was
            # accepted before the cancel and only the follow-up steps are missing.
            period = await self.ledger.period_for_payment(request["request_id"])
            if period is None:
                return await self._reject_stale(request, result, now)
            return await self._finalize_success(request, period, result.payer_receipt_code, now)

        if result.status == PaymentResultStatus.FAILURE:
            return await self._apply_failure(request, result.reason or FailureReason.PAYMENT_FAILED.value, now)

        if result.amount is None or result.amount != SUBSCRIPTION_PRICE:
            logger.error(
                "PAYMENT_AMOUNT_MISMATCH external_reference=%s request_id=%s expected=%s received=%s",
                ref, request["request_id"], SUBSCRIPTION_PRICE, result.amount,
            )
            outcome = await self._apply_failure(request, FailureReason.AMOUNT_MISMATCH.value, now)
            if outcome.status == ReconcileStatus.FAILED:
                outcome.status = ReconcileStatus.AMOUNT_MISMATCH
            return outcome

        return await self._apply_success(request, result, now)

    async def complete_from_existing_period(self, request: Dict, period: Dict, now: datetime) -> ReconcileOutcome:
        """Finish a reconciliation whose period was written but whose request was not settled."""
        return await self._finalize_success(request, period, request.get("receipt_code"), now)

    async def _reject_stale(self, request: Dict, result: PaymentResult, now: datetime) -> ReconcileOutcome:
        await self.tracker.cancel_if_stale(request, now)
        logger.warning(
            "PAYMENT_CALLBACK_STALE external_reference=%s request_id=%s result=%s",
            result.external_reference, request["request_id"], result.status.value,
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_CALLBACK_STALE,
            actor_id=SYSTEM_ACTOR,
            user_id=request["user_id"],
            resource_type="payment_request",
            resource_id=request["request_id"],
            reason_code=FailureReason.REQUEST_EXPIRED.value,
            metadata={
                "external_reference": result.external_reference,
                "result_status": result.status.value,
                "receipt_code": result.payer_receipt_code,
            },
        )
        return ReconcileOutcome(
            status=ReconcileStatus.STALE,
            external_reference=result.external_reference,
            request_id=request["request_id"],
            request_status=PaymentRequestStatus.CANCELLED.value,
            reason=FailureReason.REQUEST_EXPIRED.value,
        )

    async def _apply_failure(self, request: Dict, reason: str, now: datetime) -> ReconcileOutcome:
        ref = request.get("external_reference")
        failed = await self.tracker.mark_failed(request["request_id"], reason, now)
        if not failed:
            # Settled concurrently by another delivery
            current = await self.tracker.get_by_external_reference(ref)
            return _recorded(current or request, ref)

        await self.sink.enqueue(
            request["user_id"],
            NotificationType.PAYMENT_FAILED,
            {"request_id": request["request_id"], "reason": reason},
            idempotency_key=f"payment_failed:{request['request_id']}",
        )
        action = AuditAction.PAYMENT_AMOUNT_MISMATCH if reason == FailureReason.AMOUNT_MISMATCH.value else AuditAction.PAYMENT_FAILED
        await create_audit_log(
            action=action,
            actor_id=SYSTEM_ACTOR,
            user_id=request["user_id"],
            resource_type="payment_request",
            resource_id=request["request_id"],
            reason_code=reason,
            metadata={"external_reference": ref},
        )
        logger.info(
            "PAYMENT_RECONCILED external_reference=%s request_id=%s outcome=failed reason=%s",
            ref, request["request_id"], reason,
        )
        return ReconcileOutcome(
            status=ReconcileStatus.FAILED,
            external_reference=ref,
            request_id=request["request_id"],
            request_status=PaymentRequestStatus.FAILED.value,
            reason=reason,
        )

    async def _apply_success(self, request: Dict, result: PaymentResult, now: datetime) -> ReconcileOutcome:
        period = await self.ledger.extend_or_create(
            request["user_id"], SUBSCRIPTION_DURATION, request["request_id"], now
        )
        return await self._finalize_success(request, period, result.payer_receipt_code, now)

    async def _finalize_success(
        self,
        request: Dict,
        period: Dict,
        receipt_code: Optional[str],
        now: datetime,
    ) -> ReconcileOutcome:
        ref = request.get("external_reference")
        completed = await self.tracker.mark_completed(request["request_id"], period["period_id"], receipt_code, now)
        if not completed:
            # Cancelled by the expiry sweep after the period was appended
            completed = await self.tracker.complete_cancelled(
                request["request_id"], period["period_id"], receipt_code, now
            )
            if completed:
                logger.warning(
                    "PAYMENT_REQUEST_REINSTATED request_id=%s period_id=%s",
                    request["request_id"], period["period_id"],
                )
        status = ReconcileStatus.APPLIED
        stored = completed
        if not completed:
            stored = await self.tracker.get_by_external_reference(ref) if ref else None
            stored_status = (stored or {}).get("status")
            if stored_status != PaymentRequestStatus.COMPLETED.value:
                logger.error(
                    "PAYMENT_PERIOD_WITHOUT_COMPLETION request_id=%s period_id=%s request_status=%s",
                    request["request_id"], period["period_id"], stored_status,
                )
            status = ReconcileStatus.DUPLICATE

        # Idempotent follow-ups; safe to repeat after a crash or duplicate delivery
        await self.ledger.record_activation(request["user_id"], period, receipt_code or ref)
        notified = await self.sink.enqueue(
            request["user_id"],
            NotificationType.SUBSCRIPTION_ACTIVATED,
            {"expires_at": period["expires_at"].isoformat(), "amount": request.get("amount")},
            idempotency_key=f"subscription_activated:{request['request_id']}",
        )

        if status == ReconcileStatus.APPLIED:
            await create_audit_log(
                action=AuditAction.PAYMENT_COMPLETED,
                actor_id=SYSTEM_ACTOR,
                user_id=request["user_id"],
                resource_type="payment_request",
                resource_id=request["request_id"],
                after_state={"period_id": period["period_id"], "expires_at": period["expires_at"].isoformat()},
                metadata={"external_reference": ref, "receipt_code": receipt_code, "notified": notified},
            )
        logger.info(
            "PAYMENT_RECONCILED external_reference=%s request_id=%s outcome=%s period_id=%s expires_at=%s",
            ref, request["request_id"], status.value, period["period_id"], period["expires_at"].isoformat(),
        )
        return ReconcileOutcome(
            status=status,
            external_reference=ref,
            request_id=request["request_id"],
            request_status=(stored or request).get("status"),
            period_id=period["period_id"],
        )


payment_reconciler = PaymentReconciler()
