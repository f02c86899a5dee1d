"""Payment Routes - subscription purchase and payment status.

Endpoints:
- POST /api/payments/subscribe - Start a subscription payment (M-Pesa STK push)
- GET /api/payments/status - Current subscription status from the ledger
- GET /api/payments/requests/{request_id} - Verify a single payment request
- GET /api/payments/history - Payment requests, newest first
"""
from fastapi import APIRouter, Request
from pydantic import BaseModel
from typing import Optional
from services.payment_requests import payment_request_tracker
from services.subscription_ledger import SUBSCRIPTION_PRICE, subscription_ledger
from middleware import require_auth
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payments", tags=["payments"])


class SubscribeRequest(BaseModel):
    """Request to start a subscription payment."""
    phone_number: str
    amount: Optional[float] = None  # Defaults to the subscription price


@router.post("/subscribe")
async def subscribe(request: Request, body: SubscribeRequest):
    """
    Create a pending payment request and send the STK push.

    Returns the user's existing open request instead of creating a second one.
    """
    user = await require_auth(request)
    amount = SUBSCRIPTION_PRICE if body.amount is None else body.amount

    outcome = await payment_request_tracker.create_pending_request(
        user_id=user["user_id"],
        phone_number=body.phone_number,
        amount=amount,
    )
    message = (
        "Payment prompt sent. Enter your M-Pesa PIN to complete the subscription."
        if outcome.created
        else "A payment is already in progress. Complete it on your phone."
    )
    return {"message": message, "created": outcome.created, "payment": outcome.request}


@router.get("/status")
async def get_subscription_status(request: Request):
    user = await require_auth(request)
    status_info = await subscription_ledger.get_status(user["user_id"])
    status_info["price"] = SUBSCRIPTION_PRICE
    status_info["pending_payment"] = await payment_request_tracker.get_open_request(user["user_id"])
    if status_info["pending_payment"]:
        status_info["pending_payment"].pop("open_slot_user_id", None)
    return status_info


@router.get("/requests/{request_id}")
async def get_payment_request(request: Request, request_id: str):
    user = await require_auth(request)
    return await payment_request_tracker.get_request(user["user_id"], request_id)


@router.get("/history")
async def get_payment_history(request: Request, limit: int = 50):
    user = await require_auth(request)
    limit = max(1, min(limit, 100))
    payments = await payment_request_tracker.list_requests(user["user_id"], limit=limit)
    return {"payments": payments, "count": len(payments)}
