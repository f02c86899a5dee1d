"""Audit trail for payment, subscription, match and policy events.

Entries go to ``audit_logs`` and are append-only. Writing one is best effort:
the engine's state transitions are already committed when it is called, so a
failed write is logged and swallowed.
"""
from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"


async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
) -> str:
    """Record an audit entry and return its audit_id ("" if the write failed).

    Args:
        action: The audited event
        actor_id: User who triggered it, or "SYSTEM" for callbacks and sweeps
        user_id: User whose state changed
        resource_type: 'payment_request', 'subscription_period', 'match' or 'user'
        resource_id: ID of the resource
        before_state / after_state: Relevant fields around the change
        metadata: Correlation ids (external_reference, match_key, ...)
        reason_code: Machine reason, e.g. AMOUNT_MISMATCH or GENDER_MISMATCH
    """
    try:
        entry = AuditLog(
            action=action,
            actor_id=actor_id or SYSTEM_ACTOR,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=metadata or None,
            reason_code=reason_code,
        )
        db = database.get_db()
        await db.audit_logs.insert_one(entry.model_dump(mode="json"))
        logger.debug(
            "AUDIT action=%s resource=%s:%s user_id=%s",
            action.value, resource_type, resource_id, user_id,
        )
        return entry.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log action={action.value}: {e}")
        return ""
