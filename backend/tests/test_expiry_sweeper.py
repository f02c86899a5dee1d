"""
Expiry sweeper: conditional deactivation that never clobbers a renewal.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from datetime import datetime, timezone, timedelta

from models import NotificationType
from services.expiry_sweeper import ExpirySweeper
from services.subscription_ledger import GRACE_PERIOD

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
LAPSED_AT = NOW - GRACE_PERIOD - timedelta(minutes=1)


def _period(period_id="p1", expires_at=LAPSED_AT, status="active"):
    return {
        "period_id": period_id,
        "user_id": "u1",
        "expires_at": expires_at,
        "status": status,
    }


def _make_db(candidates):
    db = MagicMock()
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=candidates)
    db.subscription_periods.find = MagicMock(return_value=cursor)
    return db


def _make_ledger(cas_ok=True, current=None):
    ledger = MagicMock()
    ledger.deactivate_if_unchanged = AsyncMock(return_value=cas_ok)
    ledger.current_period = AsyncMock(return_value=current)
    ledger.record_expiry_if_unchanged = AsyncMock(return_value=True)
    return ledger


def _make_sink():
    sink = MagicMock()
    sink.enqueue = AsyncMock(return_value=True)
    return sink


@pytest.fixture(autouse=True)
def no_audit():
    with patch("services.expiry_sweeper.create_audit_log", new_callable=AsyncMock) as audit:
        yield audit


@pytest.mark.asyncio
async def test_lapsed_subscription_is_expired_and_notified_once():
    period = _period()
    ledger = _make_ledger(cas_ok=True, current={**period, "status": "deactivated"})
    sink = _make_sink()
    sweeper = ExpirySweeper(ledger, sink)

    with patch("services.expiry_sweeper.database.get_db", return_value=_make_db([period])):
        downgraded = await sweeper.sweep(NOW)

    assert downgraded == 1
    ledger.deactivate_if_unchanged.assert_awaited_once_with("p1", LAPSED_AT, NOW)
    ledger.record_expiry_if_unchanged.assert_awaited_once_with("u1", LAPSED_AT)
    args, kwargs = sink.enqueue.call_args
    assert args[1] == NotificationType.SUBSCRIPTION_EXPIRED
    assert kwargs["idempotency_key"] == "subscription_expired:p1"


@pytest.mark.asyncio
async def test_sweep_query_respects_grace_period():
    sweeper = ExpirySweeper(_make_ledger(), _make_sink())
    mock_db = _make_db([])

    with patch("services.expiry_sweeper.database.get_db", return_value=mock_db):
        await sweeper.sweep(NOW)

    query = mock_db.subscription_periods.find.call_args[0][0]
    assert query == {"status": "active", "expires_at": {"$lt": NOW - GRACE_PERIOD}}


@pytest.mark.asyncio
async def test_lost_compare_and_swap_leaves_renewal_intact():
    """A renewal changed the period between read and write: nothing happens."""
    ledger = _make_ledger(cas_ok=False)
    sink = _make_sink()
    sweeper = ExpirySweeper(ledger, sink)

    with patch("services.expiry_sweeper.database.get_db", return_value=_make_db([_period()])):
        downgraded = await sweeper.sweep(NOW)

    assert downgraded == 0
    ledger.record_expiry_if_unchanged.assert_not_called()
    sink.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_stacked_renewal_keeps_user_active():
    """Old period deactivated quietly; the newer period stays current."""
    renewal = _period(period_id="p2", expires_at=NOW + timedelta(hours=23))
    ledger = _make_ledger(cas_ok=True, current=renewal)
    sink = _make_sink()
    sweeper = ExpirySweeper(ledger, sink)

    with patch("services.expiry_sweeper.database.get_db", return_value=_make_db([_period()])):
        downgraded = await sweeper.sweep(NOW)

    assert downgraded == 0
    ledger.deactivate_if_unchanged.assert_awaited_once()
    ledger.record_expiry_if_unchanged.assert_not_called()
    sink.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_period_still_in_grace_is_skipped():
    in_grace = _period(expires_at=NOW - timedelta(minutes=1))
    ledger = _make_ledger()
    sweeper = ExpirySweeper(ledger, _make_sink())

    with patch("services.expiry_sweeper.database.get_db", return_value=_make_db([in_grace])):
        downgraded = await sweeper.sweep(NOW)

    assert downgraded == 0
    ledger.deactivate_if_unchanged.assert_not_called()


@pytest.mark.asyncio
async def test_one_failing_period_does_not_stop_the_sweep():
    ledger = _make_ledger(cas_ok=True)
    ledger.deactivate_if_unchanged = AsyncMock(side_effect=[RuntimeError("boom"), True])
    sweeper = ExpirySweeper(ledger, _make_sink())
    candidates = [_period(period_id="p1"), _period(period_id="p3")]

    with patch("services.expiry_sweeper.database.get_db", return_value=_make_db(candidates)):
        downgraded = await sweeper.sweep(NOW)

    assert downgraded == 1
