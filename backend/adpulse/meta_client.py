"""
Meta Marketing API Client
Talks to the Graph API over httpx with pagination, rate-limit backoff and
error classification. Every error leaving this module is a MetaApiError with
a MetaErrorKind, so callers branch on kind instead of parsing messages.
"""

import asyncio
import enum
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import httpx

from adpulse.config import ConfigurationError, Settings, get_settings

logger = logging.getLogger(__name__)

RATE_LIMIT_CODES = frozenset({4, 17, 32, 613})
RATE_LIMIT_SUBCODES = frozenset({2446079})
TOKEN_EXPIRED_CODE = 190
DATA_TOO_LARGE_MARKERS = ("reduce the amount", "reduza a quantidade")


class MetaErrorKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    TOKEN_EXPIRED = "token_expired"
    DATA_TOO_LARGE = "data_too_large"
    OTHER = "other"


class MetaApiError(Exception):
    """Normalized Graph API failure."""

    def __init__(
        self,
        message: str,
        kind: MetaErrorKind = MetaErrorKind.OTHER,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        error_type: Optional[str] = None,
        fbtrace_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.code = code
        self.subcode = subcode
        self.error_type = error_type
        self.fbtrace_id = fbtrace_id
        self.status_code = status_code

    @property
    def is_rate_limit(self) -> bool:
        return self.kind is MetaErrorKind.RATE_LIMITED

    @property
    def is_token_expired(self) -> bool:
        return self.kind is MetaErrorKind.TOKEN_EXPIRED

    @property
    def is_data_too_large(self) -> bool:
        return self.kind is MetaErrorKind.DATA_TOO_LARGE

    def __repr__(self) -> str:
        return f"MetaApiError(kind={self.kind.value}, code={self.code}, subcode={self.subcode}, message={self.message!r})"


def classify_error(error: dict, status_code: Optional[int] = None) -> MetaErrorKind:
    """Map a Graph API ``error`` object to a MetaErrorKind."""
    code = error.get("code")
    subcode = error.get("error_subcode")
    message = (error.get("message") or "").lower()

    if code in RATE_LIMIT_CODES or subcode in RATE_LIMIT_SUBCODES:
        return MetaErrorKind.RATE_LIMITED
    if code == TOKEN_EXPIRED_CODE:
        return MetaErrorKind.TOKEN_EXPIRED
    if any(marker in message for marker in DATA_TOO_LARGE_MARKERS):
        return MetaErrorKind.DATA_TOO_LARGE
    return MetaErrorKind.OTHER


def _error_from_response(response: httpx.Response) -> Optional[MetaApiError]:
    """Return a MetaApiError for a failed response, or None if the body is a success payload."""
    try:
        body = response.json()
    except ValueError:
        # HTML error pages, truncated bodies, proxies
        return MetaApiError(
            f"Non-JSON response from Meta API (HTTP {response.status_code})",
            kind=MetaErrorKind.OTHER,
            status_code=response.status_code,
        )

    if response.is_success and not isinstance(body, dict):
        return MetaApiError(
            f"Unexpected response shape from Meta API (HTTP {response.status_code})",
            kind=MetaErrorKind.OTHER,
            status_code=response.status_code,
        )

    error = body.get("error") if isinstance(body, dict) else None
    if error is None and response.is_success:
        return None
    if not isinstance(error, dict):
        error = {"message": f"HTTP {response.status_code}"}

    return MetaApiError(
        error.get("message") or f"HTTP {response.status_code}",
        kind=classify_error(error, response.status_code),
        code=error.get("code"),
        subcode=error.get("error_subcode"),
        error_type=error.get("type"),
        fbtrace_id=error.get("fbtrace_id"),
        status_code=response.status_code,
    )


class MetaApiClient:
    """
    Graph API caller. The httpx.AsyncClient is owned by the caller and must carry
    the versioned base URL (``https://graph.facebook.com/v21.0``).
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        max_retries: int = 5,
        backoff_base: float = 2.0,
        jitter: float = 1.0,
        page_size: int = 500,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.http = http
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.jitter = jitter
        self.page_size = page_size
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base * (2 ** attempt) + random.uniform(0, self.jitter)

    async def _request(self, url: str, params: Optional[dict] = None) -> dict:
        """GET with rate-limit retries. Retries the same URL, so a pagination cursor is never lost."""
        attempt = 0
        while True:
            response = await self.http.get(url, params=params)
            error = _error_from_response(response)
            if error is None:
                return response.json()

            if error.is_rate_limit and attempt < self.max_retries:
                delay = self.backoff_delay(attempt)
                attempt += 1
                logger.warning(
                    f"[Meta API] Rate limited (code={error.code}, subcode={error.subcode}). "
                    f"Retrying in {delay:.1f}s (attempt {attempt}/{self.max_retries})"
                )
                await self._sleep(delay)
                continue

            if error.is_rate_limit:
                logger.error(f"[Meta API] Rate limit persisted after {self.max_retries} retries")
            raise error

    async def call(self, path: str, access_token: str, params: Optional[dict] = None) -> dict:
        """GET a single Graph API endpoint."""
        query = {"access_token": access_token, **(params or {})}
        return await self._request(path.lstrip("/"), params=query)

    async def call_all_pages(self, path: str, access_token: str, params: Optional[dict] = None) -> list[dict]:
        """GET every page of a listing endpoint by following ``paging.next``."""
        first = await self.call(path, access_token, {**(params or {}), "limit": str(self.page_size)})
        items: list[dict] = list(first.get("data") or [])
        next_url = (first.get("paging") or {}).get("next")

        pages = 1
        while next_url:
            # next already embeds the token and cursor
            body = await self._request(next_url)
            items.extend(body.get("data") or [])
            next_url = (body.get("paging") or {}).get("next")
            pages += 1

        if pages > 1:
            logger.info(f"[Meta API] {path}: {len(items)} items across {pages} pages")
        return items

    async def _exchange_token(self, token: str, app_id: str, app_secret: str) -> dict:
        if not app_id or not app_secret:
            raise ConfigurationError("META_APP_ID and META_APP_SECRET are required")
        return await self.call(
            "oauth/access_token",
            token,
            {
                "grant_type": "fb_exchange_token",
                "client_id": app_id,
                "client_secret": app_secret,
                "fb_exchange_token": token,
            },
        )

    async def exchange_for_long_lived_token(self, short_token: str, app_id: str, app_secret: str) -> dict:
        """Exchange a short-lived OAuth token for a ~60 day token."""
        return await self._exchange_token(short_token, app_id, app_secret)

    async def refresh_long_lived_token(self, current_token: str, app_id: str, app_secret: str) -> dict:
        """
        Exchange a still-valid long-lived token for a fresh one.
        Returns a dict with ``access_token`` and ``expires_in`` (seconds).
        """
        return await self._exchange_token(current_token, app_id, app_secret)

    async def get_ad_accounts(self, access_token: str) -> list[dict]:
        return await self.call_all_pages("me/adaccounts", access_token, {"fields": "id,account_id,name"})

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "MetaApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def create_meta_client(settings: Optional[Settings] = None) -> MetaApiClient:
    """Build a MetaApiClient wired from settings. Caller closes it (``async with``)."""
    settings = settings or get_settings()
    http = httpx.AsyncClient(
        base_url=settings.meta_base_url + "/",
        timeout=settings.meta_timeout,
        headers={"Accept": "application/json"},
    )
    return MetaApiClient(
        http,
        max_retries=settings.meta_max_retries,
        backoff_base=settings.meta_backoff_base,
        page_size=settings.meta_page_size,
    )
