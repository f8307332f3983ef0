import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricing_app.db_models import User
from pricing_app.settings import get_session_secret

# Sessions are issued by the account service; this app only verifies them.
SESSION_COOKIE_NAME = "pricing_session"
PRIVILEGED_ROLES = frozenset({"admin", "root"})


def session_signature(payload_b64: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()


def verify_session_token(token: str, *, now: float | None = None) -> dict | None:
    """Claims of a signed, unexpired `<base64url json>.<hex sha256>` token, else None."""
    payload_b64, sep, signature = token.partition(".")
    if not sep or not (payload_b64.isascii() and signature.isascii()):
        return None
    if not hmac.compare_digest(session_signature(payload_b64, get_session_secret()), signature):
        return None

    try:
        claims = json.loads(base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)))
    except ValueError:
        return None
    if not isinstance(claims, dict) or not isinstance(claims.get("uid"), int):
        return None

    expires_at = claims.get("exp")
    if not isinstance(expires_at, int) or expires_at < (time.time() if now is None else now):
        return None
    return claims


def extract_session_token(request: Request) -> str | None:
    scheme, _, credentials = (request.headers.get("Authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(SESSION_COOKIE_NAME)


@dataclass
class SessionUser:
    id: int
    username: str
    role: str
    group: str

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    session_maker: async_sessionmaker[AsyncSession] = request.app.state.db_session_maker
    async with session_maker() as session:
        yield session


async def require_user(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> SessionUser:
    token = extract_session_token(request)
    claims = verify_session_token(token) if token else None
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required" if not token else "Invalid session",
        )

    # Role and group come from the users table, not the token.
    user = await session.get(User, claims["uid"])
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session")
    return SessionUser(id=user.id, username=user.username, role=user.role, group=user.group)


async def require_admin(current_user: SessionUser = Depends(require_user)) -> SessionUser:
    if not current_user.is_privileged:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user
