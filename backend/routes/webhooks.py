"""Webhook Routes - M-Pesa payment callbacks.

POST /api/payments/mpesa/callback - STK push result callback
POST /api/payments/mpesa/callback/{token} - Same, with the shared callback token
in the path; required when MPESA_CALLBACK_TOKEN is set.

Every well-formed callback is acknowledged with 200, including unknown,
duplicate and stale ones, so the gateway stops redelivering. Malformed
payloads get 400.
"""
from fastapi import APIRouter, HTTPException, Request, status
from typing import Optional
from services.errors import GatewayPayloadError
from services.mpesa_gateway import mpesa_gateway
from services.payment_reconciler import payment_reconciler
from utils.public_api_url import CALLBACK_PATH
import hmac
import logging
import os

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


def _callback_token_ok(path_token: Optional[str]) -> bool:
    """When MPESA_CALLBACK_TOKEN is set, the path token must match."""
    configured = (os.getenv("MPESA_CALLBACK_TOKEN") or "").strip()
    if not configured:
        return True
    return bool(path_token) and hmac.compare_digest(path_token.strip(), configured)


async def _handle_mpesa_callback(request: Request, token: Optional[str] = None):
    if not _callback_token_ok(token):
        logger.warning("M-Pesa callback rejected: missing or invalid callback token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        body = await request.json()
    except ValueError:
        logger.warning("M-Pesa callback rejected: body is not JSON")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed callback")

    try:
        result = mpesa_gateway.parse_callback(body)
    except GatewayPayloadError as e:
        logger.warning(f"M-Pesa callback rejected: {e.message}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    outcome = await payment_reconciler.reconcile(result)
    return {
        "ResultCode": 0,
        "ResultDesc": "Accepted",
        "outcome": outcome.status.value,
    }


@router.post(CALLBACK_PATH)
async def mpesa_callback(request: Request):
    return await _handle_mpesa_callback(request)


@router.post(CALLBACK_PATH + "/{token}")
async def mpesa_callback_with_token(request: Request, token: str):
    return await _handle_mpesa_callback(request, token)
