"""Authentication dependencies: user sessions, admin scope and webhook secrets."""

import hmac
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    wallet_address: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.user_id in settings.ADMIN_USER_IDS


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
        wallet_address=str(payload.get("wallet", "")) or None,
    )


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required.")
    return auth


def require_webhook_secret(setting_name: str) -> Callable:
    """Dependency comparing ``X-Webhook-Secret`` with the named setting in constant time."""

    async def _dependency(x_webhook_secret: Optional[str] = Header(default=None)) -> None:
        expected = str(getattr(settings, setting_name, "") or "")
        if not expected:
            raise HTTPException(status_code=503, detail=f"{setting_name} is not configured.")
        if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
            raise HTTPException(status_code=401, detail="Invalid webhook secret.")

    return _dependency
