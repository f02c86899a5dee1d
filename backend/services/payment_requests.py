"""Payment Request Tracker - one outbound payment request per subscription attempt.

Lifecycle: initiated -> processing (gateway assigned external_reference)
-> completed | failed (reconciler) | cancelled (expired untouched).

Invariants:
- At most one request per user in {initiated, processing}. Enforced by the
  unique sparse index on ``open_slot_user_id``, which is set while the request
  is open and $unset on every transition out of it.
- ``external_reference`` is unique once assigned (partial unique index).
- Amount must equal the fixed subscription price.
- The gateway call never happens while holding a database lock; the request
  row is written first, the gateway is called, then the reference is stored.
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction,
    FailureReason,
    OPEN_PAYMENT_STATUSES,
    PaymentRequest,
    PaymentRequestStatus,
)
from services.errors import ExternalServiceError, NotFoundError, ValidationError
from services.mpesa_gateway import PaymentGateway, mpesa_gateway, normalize_phone
from services.subscription_ledger import SUBSCRIPTION_PRICE
from utils.audit import SYSTEM_ACTOR, create_audit_log
from utils.dates import ensure_utc
from utils.public_api_url import get_payment_callback_url

logger = logging.getLogger(__name__)

PAYMENT_REQUEST_TTL = timedelta(minutes=int(os.getenv("PAYMENT_REQUEST_TTL_MINUTES", "30")))
SWEEP_BATCH_SIZE = 500


@dataclass
class PaymentRequestOutcome:
    request: Dict
    created: bool  # False when an existing open request was returned


def validate_amount(amount) -> int:
    """The subscription price is fixed; anything else is rejected."""
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("Amount must be a number", code="INVALID_AMOUNT")
    if amount != SUBSCRIPTION_PRICE:
        raise ValidationError(
            f"Amount must be exactly KES {SUBSCRIPTION_PRICE} for the subscription",
            code="INVALID_AMOUNT",
        )
    return SUBSCRIPTION_PRICE


def is_request_stale(request: Dict, now: datetime) -> bool:
    return (
        request.get("status") in OPEN_PAYMENT_STATUSES
        and ensure_utc(request["expires_at"]) <= now
    )


class PaymentRequestTracker:
    def __init__(self, gateway: Optional[PaymentGateway] = None):
        self.gateway = gateway or mpesa_gateway

    async def get_open_request(self, user_id: str) -> Optional[Dict]:
        db = database.get_db()
        return await db.payment_requests.find_one(
            {"user_id": user_id, "status": {"$in": list(OPEN_PAYMENT_STATUSES)}},
            {"_id": 0},
        )

    async def get_by_external_reference(self, external_reference: str) -> Optional[Dict]:
        db = database.get_db()
        return await db.payment_requests.find_one(
            {"external_reference": external_reference}, {"_id": 0}
        )

    async def get_request(self, user_id: str, request_id: str) -> Dict:
        db = database.get_db()
        request = await db.payment_requests.find_one(
            {"request_id": request_id, "user_id": user_id}, {"_id": 0, "open_slot_user_id": 0}
        )
        if not request:
            raise NotFoundError("Payment record not found")
        return request

    async def list_requests(self, user_id: str, limit: int = 50) -> List[Dict]:
        db = database.get_db()
        cursor = db.payment_requests.find(
            {"user_id": user_id}, {"_id": 0, "open_slot_user_id": 0}
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def create_pending_request(
        self,
        user_id: str,
        phone_number: str,
        amount,
        now: Optional[datetime] = None,
    ) -> PaymentRequestOutcome:
        """
        Create a pending request and send the payment prompt.

        Returns the existing open request instead of creating a duplicate.
        Raises ValidationError for a wrong amount or phone number and
        ExternalServiceError when the gateway could not be reached.
        """
        amount = validate_amount(amount)
        msisdn = normalize_phone(phone_number)
        now = now or datetime.now(timezone.utc)
        callback_url = get_payment_callback_url()
        db = database.get_db()

        existing = await self.get_open_request(user_id)
        if existing and is_request_stale(existing, now):
            await self.cancel_if_stale(existing, now)
            existing = None
        if existing:
            logger.info(
                "PAYMENT_REQUEST_REUSED user_id=%s request_id=%s status=%s",
                user_id, existing["request_id"], existing["status"],
            )
            return PaymentRequestOutcome(request=_public(existing), created=False)

        request = PaymentRequest(
            user_id=user_id,
            phone_number=msisdn,
            amount=amount,
            created_at=now,
            expires_at=now + PAYMENT_REQUEST_TTL,
        )
        doc = request.model_dump()
        doc["status"] = PaymentRequestStatus.INITIATED.value
        doc["open_slot_user_id"] = user_id
        try:
            await db.payment_requests.insert_one(doc)
        except DuplicateKeyError:
            # Concurrent request from the same user won the open slot
            existing = await self.get_open_request(user_id)
            if existing:
                return PaymentRequestOutcome(request=_public(existing), created=False)
            raise

        await create_audit_log(
            action=AuditAction.PAYMENT_REQUEST_CREATED,
            actor_id=user_id,
            user_id=user_id,
            resource_type="payment_request",
            resource_id=request.request_id,
            metadata={"amount": amount},
        )

        try:
            gateway_ref = await self.gateway.initiate_payment(msisdn, amount, callback_url)
        except ExternalServiceError as e:
            await self._release_after_initiation_failure(
                request.request_id, user_id, FailureReason.GATEWAY_UNAVAILABLE.value, e.message, now
            )
            raise
        except Exception as e:
            logger.error(
                "PAYMENT_INITIATION_ERROR user_id=%s request_id=%s error=%s",
                user_id, request.request_id, e,
            )
            await self._release_after_initiation_failure(
                request.request_id, user_id, FailureReason.INITIATION_ERROR.value, str(e), now
            )
            raise

        updated = await db.payment_requests.find_one_and_update(
            {"request_id": request.request_id, "status": PaymentRequestStatus.INITIATED.value},
            {
                "$set": {
                    "status": PaymentRequestStatus.PROCESSING.value,
                    "external_reference": gateway_ref["external_reference"],
                    "merchant_reference": gateway_ref.get("merchant_reference"),
                }
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            # Cancelled by the sweep while the gateway call was in flight
            logger.warning(
                "PAYMENT_REQUEST_LEFT_INITIATED request_id=%s external_reference=%s",
                request.request_id, gateway_ref["external_reference"],
            )
            updated = await db.payment_requests.find_one({"request_id": request.request_id}, {"_id": 0})

        logger.info(
            "PAYMENT_REQUEST_CREATED user_id=%s request_id=%s external_reference=%s",
            user_id, request.request_id, gateway_ref["external_reference"],
        )
        return PaymentRequestOutcome(request=_public(updated), created=True)

    async def mark_completed(
        self,
        request_id: str,
        period_id: str,
        receipt_code: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Dict]:
        """Open -> completed. Returns None if the request was no longer open."""
        return await self._settle(
            request_id,
            {
                "status": PaymentRequestStatus.COMPLETED.value,
                "period_id": period_id,
                "receipt_code": receipt_code,
                "settled_at": now or datetime.now(timezone.utc),
            },
        )

    async def complete_cancelled(
        self,
        request_id: str,
        period_id: str,
        receipt_code: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Dict]:
        """Cancelled -> completed when the period for this payment was written anyway.

        The expiry sweep can cancel a request between the ledger append and
        mark_completed. The period is authoritative, so the request follows it.
        """
        db = database.get_db()
        return await db.payment_requests.find_one_and_update(
            {"request_id": request_id, "status": PaymentRequestStatus.CANCELLED.value},
            {
                "$set": {
                    "status": PaymentRequestStatus.COMPLETED.value,
                    "period_id": period_id,
                    "receipt_code": receipt_code,
                    "settled_at": now or datetime.now(timezone.utc),
                },
                "$unset": {"failure_reason": ""},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def mark_failed(self, request_id: str, reason: str, now: Optional[datetime] = None) -> Optional[Dict]:
        return await self._settle(
            request_id,
            {
                "status": PaymentRequestStatus.FAILED.value,
                "failure_reason": reason,
                "settled_at": now or datetime.now(timezone.utc),
            },
        )

    async def cancel_if_stale(self, request: Dict, now: Optional[datetime] = None) -> bool:
        """Auto-cancel an open request past expires_at. Compare-and-swap on status."""
        now = now or datetime.now(timezone.utc)
        if not is_request_stale(request, now):
            return False
        db = database.get_db()
        result = await db.payment_requests.update_one(
            {
                "request_id": request["request_id"],
                "status": {"$in": list(OPEN_PAYMENT_STATUSES)},
                "expires_at": {"$lte": now},
            },
            {
                "$set": {
                    "status": PaymentRequestStatus.CANCELLED.value,
                    "failure_reason": FailureReason.REQUEST_EXPIRED.value,
                    "settled_at": now,
                },
                "$unset": {"open_slot_user_id": ""},
            },
        )
        if result.modified_count == 1:
            logger.info(
                "PAYMENT_REQUEST_EXPIRED request_id=%s user_id=%s",
                request["request_id"], request.get("user_id"),
            )
            await create_audit_log(
                action=AuditAction.PAYMENT_REQUEST_EXPIRED,
                actor_id=SYSTEM_ACTOR,
                user_id=request.get("user_id"),
                resource_type="payment_request",
                resource_id=request["request_id"],
                reason_code=FailureReason.REQUEST_EXPIRED.value,
            )
            return True
        return False

    async def find_stale_requests(self, now: datetime, limit: int = SWEEP_BATCH_SIZE) -> List[Dict]:
        db = database.get_db()
        cursor = db.payment_requests.find(
            {"status": {"$in": list(OPEN_PAYMENT_STATUSES)}, "expires_at": {"$lte": now}},
            {"_id": 0},
        ).limit(limit)
        return await cursor.to_list(length=limit)

    async def _release_after_initiation_failure(
        self,
        request_id: str,
        user_id: str,
        reason: str,
        error: str,
        now: datetime,
    ) -> None:
        """Fail the request so its open slot is freed for the next attempt."""
        await self.mark_failed(request_id, reason, now)
        await create_audit_log(
            action=AuditAction.PAYMENT_INITIATION_FAILED,
            actor_id=user_id,
            user_id=user_id,
            resource_type="payment_request",
            resource_id=request_id,
            reason_code=reason,
            metadata={"error": error},
        )

    async def _settle(self, request_id: str, fields: Dict) -> Optional[Dict]:
        db = database.get_db()
        return await db.payment_requests.find_one_and_update(
            {"request_id": request_id, "status": {"$in": list(OPEN_PAYMENT_STATUSES)}},
            {"$set": fields, "$unset": {"open_slot_user_id": ""}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )


def _public(request: Dict) -> Dict:
    return {k: v for k, v in request.items() if k not in ("_id", "open_slot_user_id")}


payment_request_tracker = PaymentRequestTracker()
