"""
Capability gate: one decision function for every interaction endpoint.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from datetime import datetime, timezone, timedelta

from models import DenyReason, InteractionAction
from services.capability_gate import (
    ACTION_PROFILES,
    CapabilityGate,
    Decision,
    authorize,
    is_gender_compatible,
)
from services.errors import NotFoundError, PolicyDenied
from services.subscription_ledger import GRACE_PERIOD

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _user(user_id="u1", gender="male", prefs=("female",), locked=False, **extra):
    user = {
        "user_id": user_id,
        "gender": gender,
        "gender_preference": list(prefs),
        "account_locked": locked,
    }
    user.update(extra)
    return user


MAN = _user("u1", "male", ["female"])
WOMAN = _user("u2", "female", ["male"])


def test_every_action_has_a_profile():
    assert set(ACTION_PROFILES) == set(InteractionAction)


@pytest.mark.parametrize("action", list(InteractionAction))
def test_subscribed_compatible_users_may_do_everything(action):
    assert authorize(MAN, action, WOMAN, subscription_active=True) == Decision.allow()


def test_liking_does_not_require_subscription():
    assert authorize(MAN, InteractionAction.LIKE_PROFILE, WOMAN, False).allowed is True
    assert authorize(MAN, InteractionAction.LIKE_PHOTO, WOMAN, False).allowed is True


@pytest.mark.parametrize("action", [InteractionAction.SEND_MESSAGE, InteractionAction.INITIATE_CHAT])
def test_messaging_requires_subscription(action):
    decision = authorize(MAN, action, WOMAN, subscription_active=False)
    assert decision.allowed is False
    assert decision.reason == DenyReason.SUBSCRIPTION_REQUIRED
    assert decision.message


def test_gender_mismatch_reported_before_subscription():
    """An upgrade prompt is never shown for an action payment cannot unlock."""
    other_man = _user("u3", "male", ["female"])
    decision = authorize(MAN, InteractionAction.SEND_MESSAGE, other_man, subscription_active=False)
    assert decision.reason == DenyReason.GENDER_MISMATCH


def test_locked_account_checked_first():
    locked = _user("u1", "male", ["female"], locked=True)
    decision = authorize(locked, InteractionAction.SEND_MESSAGE, _user("u3", "male", []), False)
    assert decision.reason == DenyReason.ACCOUNT_LOCKED


def test_compatibility_must_be_mutual():
    picky = _user("u2", "female", ["female"])
    assert is_gender_compatible(MAN, picky) is False
    assert authorize(MAN, InteractionAction.LIKE_PROFILE, picky, True).reason == DenyReason.GENDER_MISMATCH


def test_missing_gender_or_preferences_is_incompatible():
    assert is_gender_compatible(_user("u1", None, ["female"]), WOMAN) is False
    assert is_gender_compatible(_user("u1", "male", []), WOMAN) is False
    assert is_gender_compatible(MAN, _user("u2", "female", [])) is False


def _make_db(actor, target):
    db = MagicMock()
    users = {actor["user_id"]: actor}
    if target:
        users[target["user_id"]] = target
    db.users.find_one = AsyncMock(side_effect=lambda query, projection=None: users.get(query["user_id"]))
    return db


def _make_ledger(period):
    ledger = MagicMock()
    ledger.current_period = AsyncMock(return_value=period)
    return ledger


@pytest.mark.asyncio
async def test_check_uses_ledger_not_snapshot():
    """Snapshot says active but the ledger period lapsed: denied."""
    actor = _user("u1", "male", ["female"], subscription={"status": "active", "expires_at": NOW + timedelta(days=1)})
    lapsed = {"period_id": "p1", "status": "active", "expires_at": NOW - GRACE_PERIOD - timedelta(seconds=1)}
    gate = CapabilityGate(_make_ledger(lapsed))

    with patch("services.capability_gate.database.get_db", return_value=_make_db(actor, WOMAN)):
        with patch("services.capability_gate.create_audit_log", new_callable=AsyncMock) as audit:
            decision, _, _ = await gate.check("u1", InteractionAction.SEND_MESSAGE, "u2", NOW)

    assert decision.reason == DenyReason.SUBSCRIPTION_REQUIRED
    audit.assert_awaited_once()
    assert audit.call_args.kwargs["reason_code"] == "SUBSCRIPTION_REQUIRED"


@pytest.mark.asyncio
async def test_check_allows_within_grace():
    in_grace = {"period_id": "p1", "status": "active", "expires_at": NOW - timedelta(minutes=5)}
    gate = CapabilityGate(_make_ledger(in_grace))

    with patch("services.capability_gate.database.get_db", return_value=_make_db(MAN, WOMAN)):
        decision, actor, target = await gate.check("u1", InteractionAction.SEND_MESSAGE, "u2", NOW)

    assert decision.allowed is True
    assert target["user_id"] == "u2"


@pytest.mark.asyncio
async def test_like_does_not_touch_ledger():
    ledger = _make_ledger(None)
    gate = CapabilityGate(ledger)

    with patch("services.capability_gate.database.get_db", return_value=_make_db(MAN, WOMAN)):
        decision, _, _ = await gate.check("u1", InteractionAction.LIKE_PROFILE, "u2", NOW)

    assert decision.allowed is True
    ledger.current_period.assert_not_called()


@pytest.mark.asyncio
async def test_enforce_raises_with_reason_code():
    gate = CapabilityGate(_make_ledger(None))

    with patch("services.capability_gate.database.get_db", return_value=_make_db(MAN, WOMAN)):
        with patch("services.capability_gate.create_audit_log", new_callable=AsyncMock):
            with pytest.raises(PolicyDenied) as exc:
                await gate.enforce("u1", InteractionAction.INITIATE_CHAT, "u2", NOW)

    assert exc.value.code == "SUBSCRIPTION_REQUIRED"
    assert exc.value.reason == "SUBSCRIPTION_REQUIRED"


@pytest.mark.asyncio
async def test_unknown_target_is_not_found():
    gate = CapabilityGate(_make_ledger(None))

    with patch("services.capability_gate.database.get_db", return_value=_make_db(MAN, None)):
        with pytest.raises(NotFoundError):
            await gate.check("u1", InteractionAction.LIKE_PROFILE, "ghost", NOW)
