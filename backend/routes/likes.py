"""Like Routes - profile and photo likes.

Endpoints:
- POST /api/likes/profile/{user_id} - Express interest in a user; mutual interest creates a match
- POST /api/likes/photo/{photo_id} - Like a photo
"""
from fastapi import APIRouter, Request
from models import InterestOutcome
from services.interactions import interaction_service
from middleware import require_auth
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/likes", tags=["likes"])


@router.post("/profile/{user_id}")
async def like_profile(request: Request, user_id: str):
    user = await require_auth(request)
    result = await interaction_service.like_profile(user["user_id"], user_id)

    if result.outcome == InterestOutcome.MATCHED:
        message = "It's a match!"
    elif result.outcome == InterestOutcome.ALREADY_RECORDED:
        message = "You already liked this profile"
    else:
        message = "Profile liked"
    return {
        "message": message,
        "outcome": result.outcome.value,
        "is_match": result.is_match,
        "match_created": result.match_created,
        "match_id": result.match_id,
        "chat_id": result.chat_id,
    }


@router.post("/photo/{photo_id}")
async def like_photo(request: Request, photo_id: str):
    user = await require_auth(request)
    result = await interaction_service.like_photo(user["user_id"], photo_id)
    result["message"] = "Photo already liked" if result["already_liked"] else "Photo liked"
    return result
