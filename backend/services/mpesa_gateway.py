"""
Payment Gateway Adapter - M-Pesa STK push (Safaricom Daraja).

The engine only depends on the PaymentGateway interface:
- initiate_payment(phone, amount, callback_url) -> {"external_reference", "merchant_reference"}
- parse_callback(raw) -> PaymentResult

Initiation retries with exponential backoff ONLY while the STK push has
provably not been sent (token fetch failures, connection errors). Once the
push request may have reached the gateway (read timeout, HTTP error,
rejection) it is never re-sent, to avoid charging the payer twice.
"""
import asyncio
import base64
import logging
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from models import PaymentResult, PaymentResultStatus
from services.errors import ExternalServiceError, GatewayPayloadError, ValidationError

logger = logging.getLogger(__name__)

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}
MPESA_TIMEOUT_SECONDS = float(os.getenv("MPESA_TIMEOUT_SECONDS", "10"))
MAX_RETRIES = int(os.getenv("MPESA_MAX_RETRIES", "3"))
INITIAL_BACKOFF_SECONDS = 1
MAX_BACKOFF_SECONDS = 8
ACCOUNT_REFERENCE = "DATING-APP-SUB"
TRANSACTION_DESC = "Dating App Subscription"

KENYAN_MSISDN = re.compile(r"^254[17]\d{8}$")


def normalize_phone(phone_number: str) -> str:
    """Normalize a Kenyan mobile number to 2547XXXXXXXX / 2541XXXXXXXX."""
    if not phone_number or not isinstance(phone_number, str):
        raise ValidationError("Phone number is required", code="INVALID_PHONE")
    digits = re.sub(r"\D", "", phone_number.strip())
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits
    if not KENYAN_MSISDN.match(digits):
        raise ValidationError(
            "Invalid Kenyan phone number. Format: 2547XXXXXXXX",
            code="INVALID_PHONE",
        )
    return digits


def _metadata_items(stk_callback: Dict[str, Any]) -> Dict[str, Any]:
    items = (stk_callback.get("CallbackMetadata") or {}).get("Item") or []
    if not isinstance(items, list):
        raise GatewayPayloadError("CallbackMetadata.Item must be a list")
    values = {}
    for item in items:
        if isinstance(item, dict) and "Name" in item:
            values[item["Name"]] = item.get("Value")
    return values


def _parse_amount(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise GatewayPayloadError(f"Invalid Amount in callback metadata: {value!r}")


class PaymentGateway(ABC):
    """Abstract base class for mobile-money gateways."""

    @abstractmethod
    async def initiate_payment(self, phone_number: str, amount: int, callback_url: str) -> Dict[str, str]:
        """Send the payment prompt. Returns at least {"external_reference"}."""
        pass

    @abstractmethod
    def parse_callback(self, raw: Dict[str, Any]) -> PaymentResult:
        """Normalize a raw callback body; raise GatewayPayloadError if malformed."""
        pass


class MpesaGateway(PaymentGateway):
    """Daraja STK push implementation."""

    def __init__(self):
        env = (os.getenv("MPESA_ENV") or "sandbox").strip().lower()
        self.base_url = MPESA_BASE_URLS.get(env, MPESA_BASE_URLS["sandbox"])
        self.consumer_key = (os.getenv("MPESA_CONSUMER_KEY") or "").strip()
        self.consumer_secret = (os.getenv("MPESA_CONSUMER_SECRET") or "").strip()
        self.shortcode = (os.getenv("MPESA_SHORTCODE") or os.getenv("MPESA_PAYBILL") or "").strip()
        self.passkey = (os.getenv("MPESA_PASSKEY") or "").strip()
        self.timeout = httpx.Timeout(MPESA_TIMEOUT_SECONDS)
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}".encode()
        return base64.b64encode(raw).decode()

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        now = datetime.now(timezone.utc)
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token
        if not self.consumer_key or not self.consumer_secret:
            raise ExternalServiceError("M-Pesa consumer credentials are not configured")

        response = await client.get(
            f"{self.base_url}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )
        if response.status_code != 200:
            raise ExternalServiceError(f"M-Pesa token request failed with status {response.status_code}")
        try:
            data = response.json()
            token = data.get("access_token")
            expires_in = int(data.get("expires_in") or 3599)
        except (ValueError, AttributeError, TypeError) as e:
            raise ExternalServiceError(f"Unreadable M-Pesa token response: {e}")
        if not token:
            raise ExternalServiceError("Access token not found in M-Pesa response")
        self._token = token
        # Refresh a minute early
        self._token_expires_at = now + timedelta(seconds=max(expires_in - 60, 0))
        return token

    async def initiate_payment(self, phone_number: str, amount: int, callback_url: str) -> Dict[str, str]:
        msisdn = normalize_phone(phone_number)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(MAX_RETRIES):
                try:
                    token = await self._get_access_token(client)
                    return await self._send_stk_push(client, token, msisdn, amount, callback_url)
                except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
                    # Not sent yet; safe to retry
                    if attempt >= MAX_RETRIES - 1:
                        raise ExternalServiceError(f"M-Pesa unreachable after {MAX_RETRIES} attempts: {e}")
                    backoff = min(INITIAL_BACKOFF_SECONDS * (2 ** attempt), MAX_BACKOFF_SECONDS)
                    logger.warning(
                        "MPESA_CONNECT_RETRY attempt=%s backoff=%ss error=%s", attempt + 1, backoff, e
                    )
                    await asyncio.sleep(backoff)
                except httpx.HTTPError as e:
                    # Request may have been delivered; do not resend
                    raise ExternalServiceError(f"M-Pesa request failed: {e}")
        raise ExternalServiceError("M-Pesa initiation failed")

    async def _send_stk_push(
        self,
        client: httpx.AsyncClient,
        token: str,
        msisdn: str,
        amount: int,
        callback_url: str,
    ) -> Dict[str, str]:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        response = await client.post(
            f"{self.base_url}/mpesa/stkpush/v1/processrequest",
            json={
                "BusinessShortCode": self.shortcode,
                "Password": self._password(timestamp),
                "Timestamp": timestamp,
                "TransactionType": "CustomerPayBillOnline",
                "Amount": amount,
                "PartyA": msisdn,
                "PartyB": self.shortcode,
                "PhoneNumber": msisdn,
                "CallBackURL": callback_url,
                "AccountReference": ACCOUNT_REFERENCE,
                "TransactionDesc": TRANSACTION_DESC,
            },
            headers={"Authorization": f"Bearer {token}"},
        )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code != 200 or str(data.get("ResponseCode")) != "0":
            message = data.get("errorMessage") or data.get("ResponseDescription") or f"HTTP {response.status_code}"
            logger.error("MPESA_STK_PUSH_REJECTED status=%s message=%s", response.status_code, message)
            raise ExternalServiceError(f"M-Pesa rejected the payment request: {message}")

        checkout_request_id = data.get("CheckoutRequestID")
        if not checkout_request_id:
            raise ExternalServiceError("M-Pesa response missing CheckoutRequestID")
        logger.info(
            "MPESA_STK_PUSH_ACCEPTED checkout_request_id=%s merchant_request_id=%s",
            checkout_request_id, data.get("MerchantRequestID"),
        )
        return {
            "external_reference": checkout_request_id,
            "merchant_reference": data.get("MerchantRequestID"),
        }

    def parse_callback(self, raw: Dict[str, Any]) -> PaymentResult:
        if not isinstance(raw, dict):
            raise GatewayPayloadError("Callback body must be a JSON object")
        stk_callback = (raw.get("Body") or {}).get("stkCallback") if isinstance(raw.get("Body"), dict) else None
        if not isinstance(stk_callback, dict):
            raise GatewayPayloadError("Invalid callback format: Body.stkCallback missing")

        checkout_request_id = stk_callback.get("CheckoutRequestID")
        if not checkout_request_id or not isinstance(checkout_request_id, str):
            raise GatewayPayloadError("Invalid callback format: CheckoutRequestID missing")
        try:
            result_code = int(stk_callback.get("ResultCode"))
        except (TypeError, ValueError):
            raise GatewayPayloadError("Invalid callback format: ResultCode missing or not numeric")

        if result_code != 0:
            return PaymentResult(
                external_reference=checkout_request_id,
                status=PaymentResultStatus.FAILURE,
                reason=stk_callback.get("ResultDesc") or None,
            )

        metadata = _metadata_items(stk_callback)
        phone = metadata.get("PhoneNumber")
        receipt = metadata.get("MpesaReceiptNumber")
        return PaymentResult(
            external_reference=checkout_request_id,
            amount=_parse_amount(metadata.get("Amount")),
            status=PaymentResultStatus.SUCCESS,
            payer_phone=str(phone) if phone is not None else None,
            payer_receipt_code=str(receipt) if receipt is not None else None,
        )


mpesa_gateway = MpesaGateway()
