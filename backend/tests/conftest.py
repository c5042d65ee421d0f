"""
Shared fixtures: in-memory SQLite database, Meta client on a mock transport,
and test secrets set before the application package is imported.
"""

import os

os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "3f1c9a7e5b2d4c6e8f0a1b3c5d7e9f1a2b4c6d8e0f1a3b5c7d9e1f2a4b6c8d0e")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("API_KEY", "")

from typing import Callable
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

from adpulse.crypto import encrypt_token
from adpulse.database import Base
from adpulse.meta_client import MetaApiClient
from adpulse.models import Account
import adpulse.models  # noqa: F401

GRAPH_BASE_URL = "https://graph.facebook.com/v21.0/"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db_session() -> AsyncSession:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def make_meta_client() -> Callable[..., MetaApiClient]:
    """Build a MetaApiClient whose HTTP calls go to ``handler`` and whose backoff never sleeps."""

    def _make(handler, max_retries: int = 5, page_size: int = 500) -> MetaApiClient:
        http = httpx.AsyncClient(base_url=GRAPH_BASE_URL, transport=httpx.MockTransport(handler))
        return MetaApiClient(
            http,
            max_retries=max_retries,
            backoff_base=0,
            jitter=0,
            page_size=page_size,
            sleep=AsyncMock(),
        )

    return _make


@pytest.fixture
def make_account(db_session):
    async def _make(
        ad_account_id: str = "act_1001",
        user_id: str = "user-1",
        token: str = "plain-token",
        **kwargs,
    ) -> Account:
        account = Account(
            user_id=user_id,
            ad_account_id=ad_account_id,
            name=kwargs.pop("name", ad_account_id),
            access_token=encrypt_token(token),
            **kwargs,
        )
        db_session.add(account)
        await db_session.commit()
        return account

    return _make


def _graph_error(code: int, message: str = "error", subcode: int | None = None, status: int = 400) -> httpx.Response:
    error = {"message": message, "type": "OAuthException", "code": code, "fbtrace_id": "trace"}
    if subcode is not None:
        error["error_subcode"] = subcode
    return httpx.Response(status, json={"error": error})


@pytest.fixture
def graph_error():
    """Factory for Graph API error responses."""
    return _graph_error
