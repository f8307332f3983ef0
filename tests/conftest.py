import base64
import json
import sys
import time
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pricing_app.auth import session_signature
from pricing_app.db_models import Base, User

TEST_SESSION_SECRET = "unit-test-secret"


@pytest_asyncio.fixture
async def session_maker() -> async_sessionmaker:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield maker
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def seeded_users(session_maker: async_sessionmaker) -> dict[str, User]:
    async with session_maker() as session:
        users = {
            "alice": User(username="alice", display_name="Alice", role="user", group="default"),
            "bob": User(username="bob", display_name="Bob", role="user", group="vip"),
            "root": User(username="root", display_name="Root", role="admin", group="default"),
        }
        session.add_all(list(users.values()))
        await session.commit()
        for user in users.values():
            await session.refresh(user)
        return users


@pytest.fixture
def issue_session_token(monkeypatch: pytest.MonkeyPatch):
    """Mint tokens the way the account service does, signed with the test secret."""
    monkeypatch.setenv("SESSION_SECRET", TEST_SESSION_SECRET)

    def issue(
        user_id,
        *,
        expires_in: int = 3600,
        now: int | None = None,
        secret: str = TEST_SESSION_SECRET,
    ) -> str:
        issued_at = int(time.time()) if now is None else now
        claims = {"uid": user_id, "iat": issued_at, "exp": issued_at + expires_in}
        payload_b64 = (
            base64.urlsafe_b64encode(json.dumps(claims).encode("utf-8")).decode("ascii").rstrip("=")
        )
        return f"{payload_b64}.{session_signature(payload_b64, secret)}"

    return issue


@pytest.fixture
def auth_headers(issue_session_token):
    def headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {issue_session_token(user.id)}"}

    return headers
