"""
Caller identity.

Authentication happens upstream (gateway or auth middleware). Routes only need
the already-authenticated user id, taken from `request.state.user_id` when a
middleware set it, otherwise from the `X-User-Id` header.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    user_id = getattr(request.state, "user_id", None) or x_user_id
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id.strip()
