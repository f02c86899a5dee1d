"""
Shared job runner for scheduled background jobs.
Used by the server scheduler. Each run_* returns a dict with "message" and "count".
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


async def run_subscription_expiry_sweep():
    try:
        from services.expiry_sweeper import expiry_sweeper
        count = await expiry_sweeper.sweep()
        logger.info(f"Subscription expiry sweep completed: {count} subscriptions expired")
        return {"message": f"Subscriptions expired: {count}", "count": count}
    except Exception as e:
        logger.error(f"Subscription expiry sweep failed: {e}")
        raise


async def run_payment_request_expiry():
    """
    Cancel payment requests left open past their expiry.

    A request whose subscription period was already written (crash between the
    ledger append and the request transition) is completed instead of cancelled.
    """
    try:
        from services.payment_reconciler import payment_reconciler
        from services.payment_requests import payment_request_tracker
        from services.subscription_ledger import subscription_ledger

        now = datetime.now(timezone.utc)
        stale = await payment_request_tracker.find_stale_requests(now)
        cancelled = 0
        repaired = 0
        for request in stale:
            try:
                period = await subscription_ledger.period_for_payment(request["request_id"])
                if period:
                    await payment_reconciler.complete_from_existing_period(request, period, now)
                    repaired += 1
                elif await payment_request_tracker.cancel_if_stale(request, now):
                    # A success reconciled between the read and the cancel keeps its period
                    period = await subscription_ledger.period_for_payment(request["request_id"])
                    if period:
                        await payment_reconciler.complete_from_existing_period(request, period, now)
                        repaired += 1
                    else:
                        cancelled += 1
            except Exception as e:
                logger.error(f"Payment request expiry failed for {request.get('request_id')}: {e}")
        logger.info(f"Payment request expiry completed: {cancelled} cancelled, {repaired} repaired")
        return {
            "message": f"Payment requests cancelled: {cancelled}, repaired: {repaired}",
            "count": cancelled + repaired,
        }
    except Exception as e:
        logger.error(f"Payment request expiry job failed: {e}")
        raise


async def run_match_repair():
    try:
        from services.match_coordinator import match_coordinator
        count = await match_coordinator.repair_unfinalized()
        logger.info(f"Match repair completed: {count} matches finalized")
        return {"message": f"Matches repaired: {count}", "count": count}
    except Exception as e:
        logger.error(f"Match repair job failed: {e}")
        raise
