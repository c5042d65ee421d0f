"""
Tests for long-lived token refresh and fan-out across a user's accounts.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from adpulse.config import Settings
from adpulse.crypto import decrypt_token
from adpulse.meta_client import MetaApiError, MetaErrorKind
from adpulse.services.token_service import (
    AccountNotFoundError,
    connect_account,
    get_account,
    refresh_if_expiring_soon,
)

NOW = datetime(2024, 6, 10, 12, 0, 0)
SETTINGS = Settings(meta_app_id="app-id", meta_app_secret="app-secret")


def _client(response=None, error=None) -> AsyncMock:
    client = AsyncMock()
    if error is not None:
        client.refresh_long_lived_token.side_effect = error
    else:
        client.refresh_long_lived_token.return_value = response
    return client


@pytest.mark.anyio
@pytest.mark.parametrize("expires_at", [None, NOW + timedelta(days=30), NOW - timedelta(hours=1)])
async def test_token_left_alone(db_session, make_account, expires_at):
    """No tracked expiry, far from expiry, or already expired: nothing to refresh."""
    account = await make_account(token_expires_at=expires_at)
    client = _client({"access_token": "new"})

    result = await refresh_if_expiring_soon(
        db_session, client, account.id, account.access_token, now=NOW, settings=SETTINGS
    )

    assert result == account.access_token
    client.refresh_long_lived_token.assert_not_awaited()


@pytest.mark.anyio
async def test_refresh_fans_out_to_same_user_only(db_session, make_account):
    account = await make_account("act_1", user_id="user-1", token="old", token_expires_at=NOW + timedelta(days=3))
    sibling = await make_account("act_2", user_id="user-1", token="old")
    stranger = await make_account("act_3", user_id="user-2", token="theirs")
    client = _client({"access_token": "fresh", "expires_in": 60 * 86400})

    result = await refresh_if_expiring_soon(
        db_session, client, account.id, account.access_token, now=NOW, settings=SETTINGS
    )

    assert decrypt_token(result) == "fresh"
    client.refresh_long_lived_token.assert_awaited_once_with("old", "app-id", "app-secret")
    for row in (account, sibling, stranger):
        await db_session.refresh(row)
    assert decrypt_token(account.access_token) == "fresh"
    assert decrypt_token(sibling.access_token) == "fresh"
    assert account.token_expires_at == NOW + timedelta(days=60)
    assert sibling.token_expires_at == NOW + timedelta(days=60)
    assert decrypt_token(stranger.access_token) == "theirs"


@pytest.mark.anyio
async def test_refresh_failure_keeps_old_token(db_session, make_account):
    account = await make_account(token="old", token_expires_at=NOW + timedelta(days=2))
    client = _client(error=MetaApiError("Invalid OAuth access token", MetaErrorKind.TOKEN_EXPIRED, code=190))

    result = await refresh_if_expiring_soon(
        db_session, client, account.id, account.access_token, now=NOW, settings=SETTINGS
    )

    assert result == account.access_token
    await db_session.refresh(account)
    assert decrypt_token(account.access_token) == "old"


@pytest.mark.anyio
async def test_refresh_without_expires_in_clears_expiry(db_session, make_account):
    account = await make_account(token_expires_at=NOW + timedelta(days=1))
    client = _client({"access_token": "never-expires"})

    await refresh_if_expiring_soon(db_session, client, account.id, account.access_token, now=NOW, settings=SETTINGS)

    await db_session.refresh(account)
    assert account.token_expires_at is None


@pytest.mark.anyio
async def test_unknown_account(db_session):
    import uuid

    with pytest.raises(AccountNotFoundError):
        await get_account(db_session, uuid.uuid4())


@pytest.mark.anyio
async def test_connect_account_creates_row_and_propagates(db_session, make_account):
    existing = await make_account("act_1", user_id="user-1", token="stale")
    client = AsyncMock()
    client.exchange_for_long_lived_token.return_value = {"access_token": "long-lived", "expires_in": 5184000}

    account = await connect_account(db_session, client, "user-1", "short", "act_2", name="Second", settings=SETTINGS)

    assert account.ad_account_id == "act_2"
    assert account.name == "Second"
    assert account.conversion_event == SETTINGS.default_conversion_event
    assert decrypt_token(account.access_token) == "long-lived"
    await db_session.refresh(existing)
    assert decrypt_token(existing.access_token) == "long-lived"
