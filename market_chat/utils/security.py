import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import PyJWTError
from pydantic import ValidationError as PayloadError

from market_chat.config import get_settings
from market_chat.exceptions import NotAuthenticated
from market_chat.schemas.user import TokenPayload

log = logging.getLogger("market_chat.security")


def create_access_token(user_id: str, role: Optional[str] = None, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a token. Login lives elsewhere; this is used by tooling and tests."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    claims: Dict[str, Any] = {"sub": user_id, "exp": expire}
    if role:
        claims["role"] = role
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> TokenPayload:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        return TokenPayload.model_validate(payload)
    except (PyJWTError, PayloadError) as exc:
        log.warning("Rejected access token: %s", exc)
        raise NotAuthenticated("Invalid or expired token") from exc


def current_user_from_token(token: Optional[str]) -> Dict[str, Any]:
    if not token:
        raise NotAuthenticated("Missing access token")
    payload = decode_access_token(token)
    return {"_id": payload.sub, "role": payload.role}
