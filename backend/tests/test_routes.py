"""
HTTP surface: auth, error mapping and the payment callback contract.
"""
import os
import pytest
from unittest.mock import AsyncMock, patch

from models import InterestOutcome
from services.errors import ExternalServiceError, PolicyDenied
from services.interactions import interaction_service
from services.match_coordinator import InterestResult, match_coordinator
from services.payment_reconciler import ReconcileOutcome, ReconcileStatus, payment_reconciler
from services.payment_requests import PaymentRequestOutcome, payment_request_tracker

CALLBACK = {
    "Body": {
        "stkCallback": {
            "MerchantRequestID": "m1",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": 0,
            "ResultDesc": "The service request is processed successfully.",
            "CallbackMetadata": {"Item": [
                {"Name": "Amount", "Value": 10},
                {"Name": "MpesaReceiptNumber", "Value": "QKT1"},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]},
        }
    }
}


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_subscribe_requires_auth(client):
    response = client.post("/api/payments/subscribe", json={"phone_number": "0712345678"})
    assert response.status_code == 401


def test_subscribe_creates_pending_request(client, auth_headers):
    outcome = PaymentRequestOutcome(request={"request_id": "r1", "status": "processing"}, created=True)
    with patch.object(payment_request_tracker, "create_pending_request", new_callable=AsyncMock, return_value=outcome) as create:
        response = client.post("/api/payments/subscribe", json={"phone_number": "0712345678"}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["payment"]["request_id"] == "r1"
    assert create.call_args.kwargs["user_id"] == "u1"
    assert create.call_args.kwargs["amount"] == 10


def test_subscribe_wrong_amount_is_400(client, auth_headers):
    response = client.post(
        "/api/payments/subscribe",
        json={"phone_number": "0712345678", "amount": 9},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_AMOUNT"


def test_subscribe_gateway_down_is_502(client, auth_headers):
    with patch.object(payment_request_tracker, "create_pending_request", new_callable=AsyncMock,
                      side_effect=ExternalServiceError("M-Pesa unreachable")):
        response = client.post("/api/payments/subscribe", json={"phone_number": "0712345678"}, headers=auth_headers)

    assert response.status_code == 502
    assert response.json()["code"] == "EXTERNAL_SERVICE_ERROR"


def test_callback_is_acknowledged(client):
    outcome = ReconcileOutcome(status=ReconcileStatus.UNKNOWN_REFERENCE, external_reference="ws_CO_1")
    with patch.dict(os.environ, {"MPESA_CALLBACK_TOKEN": ""}):
        with patch.object(payment_reconciler, "reconcile", new_callable=AsyncMock, return_value=outcome) as reconcile:
            response = client.post("/api/payments/mpesa/callback", json=CALLBACK)

    assert response.status_code == 200
    assert response.json()["ResultCode"] == 0
    result = reconcile.call_args[0][0]
    assert result.external_reference == "ws_CO_1"
    assert result.amount == 10.0


def test_malformed_callback_is_400(client):
    with patch.dict(os.environ, {"MPESA_CALLBACK_TOKEN": ""}):
        with patch.object(payment_reconciler, "reconcile", new_callable=AsyncMock) as reconcile:
            response = client.post("/api/payments/mpesa/callback", json={"Body": {}})

    assert response.status_code == 400
    reconcile.assert_not_called()


def test_callback_token_enforced_when_configured(client):
    outcome = ReconcileOutcome(status=ReconcileStatus.APPLIED, external_reference="ws_CO_1")
    with patch.dict(os.environ, {"MPESA_CALLBACK_TOKEN": "s3cret"}):
        with patch.object(payment_reconciler, "reconcile", new_callable=AsyncMock, return_value=outcome):
            missing = client.post("/api/payments/mpesa/callback", json=CALLBACK)
            wrong = client.post("/api/payments/mpesa/callback/nope", json=CALLBACK)
            right = client.post("/api/payments/mpesa/callback/s3cret", json=CALLBACK)

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert right.status_code == 200


def test_like_profile_match(client, auth_headers):
    result = InterestResult(
        outcome=InterestOutcome.MATCHED, target_user_id="u2", match_id="m1", chat_id="m1", match_created=True
    )
    with patch.object(interaction_service, "like_profile", new_callable=AsyncMock, return_value=result):
        response = client.post("/api/likes/profile/u2", headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "matched"
    assert body["is_match"] is True


def test_policy_denial_is_403_with_reason(client, auth_headers):
    with patch.object(interaction_service, "send_message", new_callable=AsyncMock,
                      side_effect=PolicyDenied("SUBSCRIPTION_REQUIRED", "An active subscription is required.")):
        response = client.post("/api/chats/c1/messages", json={"content": "hi"}, headers=auth_headers)

    assert response.status_code == 403
    assert response.json() == {"code": "SUBSCRIPTION_REQUIRED", "message": "An active subscription is required."}


def test_unmatch_non_match(client, auth_headers):
    with patch.object(match_coordinator, "unmatch", new_callable=AsyncMock, return_value="not-matched"):
        response = client.delete("/api/matches/u2", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["outcome"] == "not-matched"
