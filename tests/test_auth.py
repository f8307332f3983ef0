import base64
import json

import httpx
import pytest
from fastapi import Depends, FastAPI

from pricing_app.auth import (
    SESSION_COOKIE_NAME,
    SessionUser,
    require_admin,
    require_user,
    session_signature,
    verify_session_token,
)
from pricing_app.db_models import User
from pricing_app.settings import get_session_secret

NOW = 1_700_000_000


def _signed(claims: dict) -> str:
    payload_b64 = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{payload_b64}.{session_signature(payload_b64, get_session_secret())}"


def test_valid_token_yields_claims(issue_session_token) -> None:
    token = issue_session_token(42, now=NOW)

    claims = verify_session_token(token, now=NOW + 10)

    assert claims is not None
    assert claims["uid"] == 42
    assert claims["exp"] == NOW + 3600


def test_tampered_and_malformed_tokens_are_rejected(issue_session_token) -> None:
    token = issue_session_token(42, now=NOW)
    tampered = token[:-1] + ("a" if token[-1] != "a" else "b")
    payload_b64, _, signature = token.partition(".")

    assert verify_session_token(tampered, now=NOW) is None
    assert verify_session_token("not-a-token", now=NOW) is None
    assert verify_session_token(f"{payload_b64}.{signature}é", now=NOW) is None
    assert verify_session_token(f"{payload_b64}x.{signature}", now=NOW) is None


def test_token_signed_with_another_secret_is_rejected(issue_session_token) -> None:
    token = issue_session_token(42, now=NOW, secret="someone-else")

    assert verify_session_token(token, now=NOW) is None


def test_expired_token_is_rejected(issue_session_token) -> None:
    token = issue_session_token(7, expires_in=60, now=NOW)

    assert verify_session_token(token, now=NOW + 60) is not None
    assert verify_session_token(token, now=NOW + 61) is None


@pytest.mark.parametrize(
    "claims",
    [
        {"uid": "7", "exp": NOW + 60},
        {"uid": 7},
        {"uid": 7, "exp": "soon"},
        ["uid", 7],
    ],
)
def test_claims_must_carry_integer_uid_and_expiry(issue_session_token, claims) -> None:
    assert verify_session_token(_signed(claims), now=NOW) is None


def _guarded_app(session_maker) -> FastAPI:
    app = FastAPI()
    app.state.db_session_maker = session_maker

    @app.get("/me")
    async def me(user: SessionUser = Depends(require_user)):
        return {"id": user.id, "group": user.group, "privileged": user.is_privileged}

    @app.get("/admin")
    async def admin(user: SessionUser = Depends(require_admin)):
        return {"id": user.id}

    return app


@pytest.mark.asyncio
async def test_require_user_reads_bearer_and_cookie(session_maker, seeded_users, issue_session_token) -> None:
    bob = seeded_users["bob"]
    token = issue_session_token(bob.id)

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=_guarded_app(session_maker)), base_url="http://test"
    ) as http:
        bearer = await http.get("/me", headers={"Authorization": f"Bearer {token}"})
        http.cookies.set(SESSION_COOKIE_NAME, token)
        cookie = await http.get("/me")

    assert bearer.json() == {"id": bob.id, "group": "vip", "privileged": False}
    assert cookie.json() == bearer.json()


@pytest.mark.asyncio
async def test_require_user_rejects_unknown_or_inactive_users(
    session_maker, seeded_users, issue_session_token
) -> None:
    alice = seeded_users["alice"]
    async with session_maker() as session:
        user = await session.get(User, alice.id)
        user.is_active = False
        await session.commit()

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=_guarded_app(session_maker)), base_url="http://test"
    ) as http:
        missing = await http.get("/me")
        unknown = await http.get(
            "/me", headers={"Authorization": f"Bearer {issue_session_token(9999)}"}
        )
        inactive = await http.get(
            "/me", headers={"Authorization": f"Bearer {issue_session_token(alice.id)}"}
        )

    assert missing.status_code == 401
    assert missing.json()["detail"] == "Authentication required"
    assert unknown.status_code == 401
    assert inactive.json()["detail"] == "Invalid session"


@pytest.mark.asyncio
async def test_require_admin_checks_role(session_maker, seeded_users, auth_headers) -> None:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=_guarded_app(session_maker)), base_url="http://test"
    ) as http:
        denied = await http.get("/admin", headers=auth_headers(seeded_users["alice"]))
        allowed = await http.get("/admin", headers=auth_headers(seeded_users["root"]))

    assert denied.status_code == 403
    assert allowed.json() == {"id": seeded_users["root"].id}
