from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class SubscriptionStatus(str, Enum):
    """Denormalized snapshot status embedded on the user document."""
    NONE = "none"
    ACTIVE = "active"
    EXPIRED = "expired"

class PeriodStatus(str, Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"

class PaymentRequestStatus(str, Enum):
    INITIATED = "initiated"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

OPEN_PAYMENT_STATUSES = (
    PaymentRequestStatus.INITIATED.value,
    PaymentRequestStatus.PROCESSING.value,
)
SETTLED_PAYMENT_STATUSES = (
    PaymentRequestStatus.COMPLETED.value,
    PaymentRequestStatus.FAILED.value,
)

class PaymentResultStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"

class FailureReason(str, Enum):
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    REQUEST_EXPIRED = "REQUEST_EXPIRED"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    INITIATION_ERROR = "INITIATION_ERROR"
    PAYMENT_FAILED = "PAYMENT_FAILED"

class NotificationType(str, Enum):
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    MATCH = "match"
    PHOTO_LIKE = "photo_like"
    NEW_MESSAGE = "new_message"

class InteractionAction(str, Enum):
    SEND_MESSAGE = "send-message"
    INITIATE_CHAT = "initiate-chat"
    LIKE_PROFILE = "like-profile"
    LIKE_PHOTO = "like-photo"

class DenyReason(str, Enum):
    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    GENDER_MISMATCH = "GENDER_MISMATCH"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"

class InterestOutcome(str, Enum):
    INTEREST_RECORDED = "interest-recorded"
    ALREADY_RECORDED = "already-recorded"
    MATCHED = "matched"

class AuditAction(str, Enum):
    # Payments
    PAYMENT_REQUEST_CREATED = "PAYMENT_REQUEST_CREATED"
    PAYMENT_REQUEST_EXPIRED = "PAYMENT_REQUEST_EXPIRED"
    PAYMENT_INITIATION_FAILED = "PAYMENT_INITIATION_FAILED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_AMOUNT_MISMATCH = "PAYMENT_AMOUNT_MISMATCH"
    PAYMENT_CALLBACK_STALE = "PAYMENT_CALLBACK_STALE"

    # Subscription
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"

    # Matching
    MATCH_CREATED = "MATCH_CREATED"
    MATCH_REMOVED = "MATCH_REMOVED"
    MATCH_REPAIRED = "MATCH_REPAIRED"

    # Policy
    POLICY_DENIED = "POLICY_DENIED"

# ============================================================================
# DATA MODELS
# ============================================================================

# users documents are owned by the profile system. Fields read or written here:
# user_id, gender, gender_preference, account_locked, interest_sent,
# interest_received, matches, and the advisory subscription snapshot
# {status, expires_at, last_payment_ref} (the ledger is authoritative).

class PaymentRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    phone_number: str
    amount: int
    external_reference: Optional[str] = None  # Assigned by the gateway
    merchant_reference: Optional[str] = None
    status: PaymentRequestStatus = PaymentRequestStatus.INITIATED
    failure_reason: Optional[str] = None
    receipt_code: Optional[str] = None
    period_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    settled_at: Optional[datetime] = None

class SubscriptionPeriod(BaseModel):
    model_config = ConfigDict(extra="ignore")

    period_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    starts_at: datetime
    expires_at: datetime
    status: PeriodStatus = PeriodStatus.ACTIVE
    source_payment_id: str
    base_period_id: str  # Period this one stacks on, or "none"
    created_at: datetime = Field(default_factory=utc_now)
    deactivated_at: Optional[datetime] = None

class Match(BaseModel):
    model_config = ConfigDict(extra="ignore")

    match_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    match_key: str
    user_a: str
    user_b: str
    chat_id: Optional[str] = None
    finalized: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    finalized_at: Optional[datetime] = None

class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recipient: str
    type: NotificationType
    payload: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    dispatched: bool = False
    created_at: datetime = Field(default_factory=utc_now)

class PaymentResult(BaseModel):
    """Canonical gateway result handed to the reconciler by the adapter."""
    model_config = ConfigDict(extra="ignore")

    external_reference: str
    amount: Optional[float] = None
    status: PaymentResultStatus
    payer_phone: Optional[str] = None
    payer_receipt_code: Optional[str] = None
    reason: Optional[str] = None

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
