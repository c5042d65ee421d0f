"""
Token Service: Meta long-lived token lifecycle.
Refreshes a token that is close to expiry before any sync call and fans the
new credential out to every account connected by the same user.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.config import Settings, get_settings
from adpulse.crypto import decrypt_token, encrypt_token
from adpulse.meta_client import MetaApiClient, MetaApiError
from adpulse.models import Account, AccountStatus
from adpulse.utils import utcnow

logger = logging.getLogger(__name__)

REFRESH_THRESHOLD_DAYS = 7


class AccountNotFoundError(LookupError):
    pass


async def get_account(db: AsyncSession, account_id: uuid.UUID) -> Account:
    account = await db.get(Account, account_id)
    if account is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    return account


def _expiry_from(token_data: dict, now: datetime) -> Optional[datetime]:
    expires_in = token_data.get("expires_in")
    if not expires_in:
        # Meta omits expires_in for tokens that do not expire
        return None
    return now + timedelta(seconds=int(expires_in))


async def _fan_out_token(
    db: AsyncSession, user_id: str, encrypted: str, expires_at: Optional[datetime]
) -> None:
    """All of a user's accounts share one Meta credential; keep every row on the newest token."""
    await db.execute(
        update(Account)
        .where(Account.user_id == user_id)
        .values(access_token=encrypted, token_expires_at=expires_at, updated_at=utcnow())
    )
    await db.flush()


async def refresh_if_expiring_soon(
    db: AsyncSession,
    client: MetaApiClient,
    account_id: uuid.UUID,
    encrypted_token: str,
    threshold_days: int = REFRESH_THRESHOLD_DAYS,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> str:
    """
    Return the ciphertext to use for this sync.

    Unchanged when no expiry is tracked, when expiry is more than
    ``threshold_days`` away, or when the token has already expired (the next
    API call fails with TOKEN_EXPIRED and the user has to reconnect).
    Otherwise the token is exchanged for a fresh one, written to every account
    with the same user_id, and the new ciphertext is returned.
    """
    account = await get_account(db, account_id)
    if account.token_expires_at is None:
        return encrypted_token

    now = now or utcnow()
    days_left = (account.token_expires_at - now).total_seconds() / 86400

    if days_left > threshold_days:
        return encrypted_token

    if days_left <= 0:
        logger.warning(f"[Token] Token for {account.ad_account_id} already expired. Cannot auto-refresh.")
        return encrypted_token

    logger.info(f"[Token] Auto-refreshing token for {account.ad_account_id} (expires in {days_left:.1f} days)")
    settings = settings or get_settings()
    current = decrypt_token(encrypted_token)

    try:
        token_data = await client.refresh_long_lived_token(
            current, settings.meta_app_id, settings.meta_app_secret
        )
    except (MetaApiError, httpx.HTTPError) as e:
        logger.error(f"[Token] Failed to refresh token for {account.ad_account_id}: {e!r}")
        return encrypted_token

    new_encrypted = encrypt_token(token_data["access_token"])
    new_expires_at = _expiry_from(token_data, now)
    await _fan_out_token(db, account.user_id, new_encrypted, new_expires_at)

    logger.info(f"[Token] Refreshed token for {account.ad_account_id}, new expiry: {new_expires_at}")
    return new_encrypted


async def connect_account(
    db: AsyncSession,
    client: MetaApiClient,
    user_id: str,
    short_token: str,
    ad_account_id: str,
    name: str = "",
    conversion_event: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Account:
    """
    OAuth callback step: exchange the short-lived token, store it encrypted on the
    (user, ad account) row, and propagate it to the user's other accounts.
    """
    settings = settings or get_settings()
    token_data = await client.exchange_for_long_lived_token(
        short_token, settings.meta_app_id, settings.meta_app_secret
    )
    encrypted = encrypt_token(token_data["access_token"])
    expires_at = _expiry_from(token_data, utcnow())

    result = await db.execute(
        select(Account).where(Account.user_id == user_id, Account.ad_account_id == ad_account_id)
    )
    account = result.scalar_one_or_none()
    if account is None:
        account = Account(
            user_id=user_id,
            ad_account_id=ad_account_id,
            name=name,
            access_token=encrypted,
            token_expires_at=expires_at,
            conversion_event=conversion_event or settings.default_conversion_event,
        )
        db.add(account)
    else:
        if name:
            account.name = name
        if conversion_event:
            account.conversion_event = conversion_event
    account.status = AccountStatus.ACTIVE.value
    await db.flush()

    await _fan_out_token(db, user_id, encrypted, expires_at)
    await db.refresh(account)
    logger.info(f"[Token] Connected {ad_account_id} for user {user_id}")
    return account
