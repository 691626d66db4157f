import hmac
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request


@dataclass(frozen=True)
class Principal:
    """Identity handed over by the upstream gateway; trusted as-is."""

    user_id: uuid.UUID
    email: str = ""
    is_admin: bool = False


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "y"}


def authorize(request: Request, x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = request.app.state.settings.api_key
    if not api_key:
        raise HTTPException(status_code=500, detail="DRIVE_API_KEY not configured")

    if x_api_key is None or not hmac.compare_digest(x_api_key.encode("utf-8"), api_key.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Missing or invalid API key")


def current_principal(
    _=Depends(authorize),
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_admin: Optional[str] = Header(default=None),
) -> Principal:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user identity")
    return Principal(user_id=user_id, email=x_user_email or "", is_admin=_truthy(x_user_admin))


def require_admin(principal: Principal = Depends(current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return principal
