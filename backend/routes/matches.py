"""Match Routes - matches and interest lists.

Endpoints:
- GET /api/matches - Current matches
- GET /api/matches/interest/sent - Users I have liked
- GET /api/matches/interest/received - Users who liked me
- DELETE /api/matches/{user_id} - Unmatch
"""
from fastapi import APIRouter, Request
from services.match_coordinator import UNMATCHED, match_coordinator
from middleware import require_auth
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/matches", tags=["matches"])


@router.get("")
async def list_matches(request: Request):
    user = await require_auth(request)
    matches = await match_coordinator.list_matches(user["user_id"])
    return {"matches": matches, "count": len(matches)}


@router.get("/interest/sent")
async def list_interest_sent(request: Request):
    user = await require_auth(request)
    users = await match_coordinator.list_interest_sent(user["user_id"])
    return {"users": users, "count": len(users)}


@router.get("/interest/received")
async def list_interest_received(request: Request):
    user = await require_auth(request)
    users = await match_coordinator.list_interest_received(user["user_id"])
    return {"users": users, "count": len(users)}


@router.delete("/{user_id}")
async def unmatch(request: Request, user_id: str):
    user = await require_auth(request)
    outcome = await match_coordinator.unmatch(user["user_id"], user_id)
    message = "Unmatched successfully" if outcome == UNMATCHED else "You are not matched with this user"
    return {"message": message, "outcome": outcome}
