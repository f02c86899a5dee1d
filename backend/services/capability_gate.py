"""Capability Gate - the single authorization policy for user interactions.

Every interaction endpoint (send-message, initiate-chat, like-profile,
like-photo) asks this module before doing its own work, so "subscribed" and
"compatible" mean the same thing everywhere:

- subscribed: SubscriptionLedger activity formula (status active and
  now < expires_at + grace). The user's snapshot boolean is never consulted.
- compatible: each user's gender is in the other's preference set. A user
  without a gender or with an empty preference set is compatible with nobody.

Evaluation order: ACCOUNT_LOCKED, GENDER_MISMATCH, SUBSCRIPTION_REQUIRED.
A gender mismatch is reported regardless of subscription state so the client
never shows an upgrade prompt for an action payment cannot unlock.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from database import database
from models import AuditAction, DenyReason, InteractionAction
from services.errors import NotFoundError, PolicyDenied
from services.subscription_ledger import SubscriptionLedger, is_period_active, subscription_ledger
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionProfile:
    requires_subscription: bool
    requires_compatibility: bool


# Requirement profile per interaction
ACTION_PROFILES = {
    InteractionAction.SEND_MESSAGE: ActionProfile(requires_subscription=True, requires_compatibility=True),
    InteractionAction.INITIATE_CHAT: ActionProfile(requires_subscription=True, requires_compatibility=True),
    InteractionAction.LIKE_PROFILE: ActionProfile(requires_subscription=False, requires_compatibility=True),
    InteractionAction.LIKE_PHOTO: ActionProfile(requires_subscription=False, requires_compatibility=True),
}

# Human-readable reasons surfaced with every denial
DENY_MESSAGES = {
    DenyReason.SUBSCRIPTION_REQUIRED: "An active subscription is required. Subscribe to continue.",
    DenyReason.GENDER_MISMATCH: "This action doesn't match your gender preferences.",
    DenyReason.ACCOUNT_LOCKED: "Your account is locked. Contact support.",
}

USER_POLICY_PROJECTION = {
    "_id": 0,
    "user_id": 1,
    "name": 1,
    "gender": 1,
    "gender_preference": 1,
    "account_locked": 1,
}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None
    message: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason) -> "Decision":
        return cls(allowed=False, reason=reason, message=DENY_MESSAGES[reason])


def is_gender_compatible(actor: Dict, target: Dict) -> bool:
    actor_gender = actor.get("gender")
    target_gender = target.get("gender")
    if not actor_gender or not target_gender:
        return False
    return (
        target_gender in (actor.get("gender_preference") or [])
        and actor_gender in (target.get("gender_preference") or [])
    )


def authorize(
    actor: Dict,
    action: InteractionAction,
    target: Dict,
    subscription_active: bool,
) -> Decision:
    """Pure decision function; identical for every endpoint."""
    profile = ACTION_PROFILES[action]
    if actor.get("account_locked"):
        return Decision.deny(DenyReason.ACCOUNT_LOCKED)
    if profile.requires_compatibility and not is_gender_compatible(actor, target):
        return Decision.deny(DenyReason.GENDER_MISMATCH)
    if profile.requires_subscription and not subscription_active:
        return Decision.deny(DenyReason.SUBSCRIPTION_REQUIRED)
    return Decision.allow()


class CapabilityGate:
    """Loads the inputs for ``authorize`` and records denials."""

    def __init__(self, ledger: Optional[SubscriptionLedger] = None):
        self.ledger = ledger or subscription_ledger

    async def _load_user(self, user_id: str) -> Dict:
        db = database.get_db()
        user = await db.users.find_one({"user_id": user_id}, USER_POLICY_PROJECTION)
        if not user:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user

    async def check(
        self,
        actor_id: str,
        action: InteractionAction,
        target_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Decision, Dict, Dict]:
        """Evaluate the policy. Returns (decision, actor, target)."""
        now = now or datetime.now(timezone.utc)
        actor = await self._load_user(actor_id)
        target = await self._load_user(target_id)

        subscription_active = False
        if ACTION_PROFILES[action].requires_subscription:
            subscription_active = is_period_active(await self.ledger.current_period(actor_id), now)

        decision = authorize(actor, action, target, subscription_active)
        if not decision.allowed:
            logger.info(
                "POLICY_DENIED actor_id=%s action=%s target_id=%s reason=%s",
                actor_id, action.value, target_id, decision.reason.value,
            )
            await create_audit_log(
                action=AuditAction.POLICY_DENIED,
                actor_id=actor_id,
                user_id=actor_id,
                resource_type="user",
                resource_id=target_id,
                reason_code=decision.reason.value,
                metadata={"interaction": action.value},
            )
        return decision, actor, target

    async def enforce(
        self,
        actor_id: str,
        action: InteractionAction,
        target_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Dict, Dict]:
        """Like ``check`` but raises PolicyDenied. Returns (actor, target)."""
        decision, actor, target = await self.check(actor_id, action, target_id, now)
        if not decision.allowed:
            raise PolicyDenied(decision.reason.value, decision.message)
        return actor, target


capability_gate = CapabilityGate()
