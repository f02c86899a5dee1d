"""
Canonical public API base URL for gateway callback addresses.
Use get_payment_callback_url() for the M-Pesa CallBackURL. No other code should build callback links directly.
"""
import os
import logging

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/api/payments/mpesa/callback"


def get_public_api_url() -> str:
    """
    Return normalized public backend base URL (no trailing slash).
    Fallback order: API_BASE_URL, PUBLIC_API_URL, RENDER_EXTERNAL_URL.

    Raises ValueError when no value is configured in production, since the gateway
    must be able to reach the callback over https.
    """
    raw = (
        (os.getenv("API_BASE_URL") or "").strip()
        or (os.getenv("PUBLIC_API_URL") or "").strip()
        or (os.getenv("RENDER_EXTERNAL_URL") or "").strip()
    )
    raw = raw.rstrip("/")
    env = (os.getenv("ENVIRONMENT") or os.getenv("ENV") or "").strip().lower()
    if not raw:
        if env in ("production", "prod"):
            raise ValueError(
                "API_BASE_URL must be set in production so the payment gateway can reach the callback. "
                "Set API_BASE_URL=https://<your-api-domain> (no trailing slash)."
            )
        logger.warning("API_BASE_URL not set; using localhost callback address")
        return "http://localhost:8001"
    if raw.startswith("http://") and "localhost" not in raw:
        raw = "https://" + raw.split("://", 1)[1]
    return raw


def get_payment_callback_url() -> str:
    """Callback address handed to the gateway; includes MPESA_CALLBACK_TOKEN when configured."""
    token = (os.getenv("MPESA_CALLBACK_TOKEN") or "").strip()
    url = f"{get_public_api_url()}{CALLBACK_PATH}"
    return f"{url}/{token}" if token else url
