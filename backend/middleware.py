from fastapi import Request, HTTPException, status
from typing import Optional
from auth import decode_access_token


async def get_current_user(request: Request) -> Optional[dict]:
    """Claims from the Authorization bearer token, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme != "Bearer" or not token:
        return None
    return decode_access_token(token.strip())


async def require_auth(request: Request) -> dict:
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
