"""Workday recruiting API access: OAuth token caching and single-page fetches.

Neither ``TokenCache`` nor ``PageFetcher`` retries failed calls. Every failure is
raised as a ``WorkdayError`` subclass and left for the caller to handle; retry
policy, if ever needed, wraps these objects rather than living inside them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

import httpx
from common.utils import now_epoch_ms, redact_secrets
from pydantic import BaseModel, Field, field_validator

from jobfeed.config import WorkdaySettings
from jobfeed.errors import (
    MalformedAuthResponse,
    MalformedResponseBody,
    UpstreamAuthError,
    UpstreamRequestError,
)

MAX_PAGE_SIZE = 100
DEFAULT_TOKEN_EXPIRY_SECONDS = 3600
TOKEN_EXPIRY_MARGIN_SECONDS = 300
LOGGER = logging.getLogger("jobfeed.workday")

Clock = Callable[[], int]
EnvelopeShape = Literal["array", "data", "jobPostings", "unknown"]


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at_epoch_ms: int

    def is_valid(self, now_ms: int, safety_margin_ms: int = 0) -> bool:
        return now_ms < self.expires_at_epoch_ms - safety_margin_ms


class PageRequest(BaseModel):
    limit: int = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)
    job_site_id: str | None = None

    @field_validator("limit")
    @classmethod
    def clamp_limit(cls, value: int) -> int:
        return min(value, MAX_PAGE_SIZE)


@dataclass
class PageResult:
    items: list[Any]
    total: int
    raw_envelope: Any = None
    upstream_count: int = 0
    declared_total: int | None = None
    filtered: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {"data": self.items, "total": self.total}


@dataclass(frozen=True)
class Envelope:
    shape: EnvelopeShape
    items: list[Any]
    declared_total: int | None = None


def finite_number(value: Any) -> float | None:
    # json.loads accepts NaN and Infinity; neither is a usable count or lifetime.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def _declared_total(payload: dict[str, Any]) -> int | None:
    for key in ("total", "count"):
        value = finite_number(payload.get(key))
        if value is not None:
            return int(value)
    return None


def normalize_envelope(payload: Any) -> Envelope:
    """Classify a job postings body into one of the known response shapes.

    Workday tenants answer with a bare array, ``{"data": [...]}`` or
    ``{"jobPostings": [...]}``; they are checked in that order. Anything else is
    reported as ``unknown`` with no items.
    """
    if isinstance(payload, list):
        return Envelope(shape="array", items=list(payload))
    if isinstance(payload, dict):
        declared_total = _declared_total(payload)
        if isinstance(payload.get("data"), list):
            return Envelope(
                shape="data",
                items=list(payload["data"]),
                declared_total=declared_total,
            )
        if isinstance(payload.get("jobPostings"), list):
            return Envelope(
                shape="jobPostings",
                items=list(payload["jobPostings"]),
                declared_total=declared_total,
            )
        return Envelope(shape="unknown", items=[], declared_total=declared_total)
    return Envelope(shape="unknown", items=[])


def job_site_id_of(posting: Any) -> str | None:
    if not isinstance(posting, dict):
        return None
    job_site = posting.get("jobSite")
    if not isinstance(job_site, dict):
        return None
    value = job_site.get("id")
    return value if isinstance(value, str) else None


def filter_by_job_site(postings: list[Any], job_site_id: str) -> list[Any]:
    return [posting for posting in postings if job_site_id_of(posting) == job_site_id]


class TokenCache:
    """Holds the current Workday bearer token and refreshes it when stale.

    Refreshes are serialized by a lock and the cache is re-checked once the lock
    is held, so concurrent callers that all miss the cache share one token
    exchange. The cached entry is replaced only after a complete exchange.
    """

    def __init__(
        self,
        settings: WorkdaySettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock | None = None,
        safety_margin_ms: int = 0,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.clock = clock or now_epoch_ms
        self.safety_margin_ms = safety_margin_ms
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> AccessToken | None:
        return self._token

    def invalidate(self) -> None:
        self._token = None

    def _fresh_token(self) -> AccessToken | None:
        token = self._token
        if token is not None and token.is_valid(self.clock(), self.safety_margin_ms):
            return token
        return None

    def _redacted_payload(self, text: str) -> Any:
        redacted = redact_secrets(text, self.settings.secret_values())
        try:
            return json.loads(redacted)
        except ValueError:
            return redacted

    async def get_token(self) -> AccessToken:
        token = self._fresh_token()
        if token is not None:
            return token

        async with self._lock:
            token = self._fresh_token()
            if token is not None:
                return token
            token = await self._exchange_refresh_token()
            self._token = token
            return token

    async def _exchange_refresh_token(self) -> AccessToken:
        settings = self.settings
        form = {
            "grant_type": "refresh_token",
            "client_id": settings.client_id,
            "client_secret": settings.client_secret.get_secret_value(),
            "refresh_token": settings.refresh_token.get_secret_value(),
        }
        try:
            async with httpx.AsyncClient(
                timeout=settings.timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post(
                    settings.token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.RequestError as exc:
            LOGGER.warning(
                json.dumps({"event": "workday_token_error", "error": exc.__class__.__name__})
            )
            raise UpstreamRequestError(
                None,
                f"{exc.__class__.__name__}: token endpoint unreachable",
                message="Failed to get Workday access token",
            ) from exc

        if not response.is_success:
            body = redact_secrets(response.text, settings.secret_values())
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "workday_token_error",
                        "status_code": response.status_code,
                        "body": body,
                    }
                )
            )
            raise UpstreamAuthError(response.status_code, body)

        try:
            payload = json.loads(response.text)
        except ValueError as exc:
            raise MalformedAuthResponse(
                redact_secrets(response.text, settings.secret_values())
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            LOGGER.warning(json.dumps({"event": "workday_token_error", "error": "no access_token"}))
            raise MalformedAuthResponse(self._redacted_payload(response.text))

        expires_in = finite_number(payload.get("expires_in"))
        if expires_in is None:
            expires_in = DEFAULT_TOKEN_EXPIRY_SECONDS
        lifetime_ms = int((expires_in - TOKEN_EXPIRY_MARGIN_SECONDS) * 1000)
        token = AccessToken(value=access_token, expires_at_epoch_ms=self.clock() + lifetime_ms)
        LOGGER.info(
            json.dumps(
                {
                    "event": "workday_token_refreshed",
                    "expires_at_epoch_ms": token.expires_at_epoch_ms,
                }
            )
        )
        return token


class PageFetcher:
    def __init__(
        self,
        settings: WorkdaySettings,
        token_cache: TokenCache,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.token_cache = token_cache
        self.transport = transport

    def build_params(self, request: PageRequest) -> dict[str, str]:
        params = {"limit": str(request.limit), "offset": str(request.offset)}
        if request.job_site_id and self.settings.filters_server_side:
            params["jobSite"] = request.job_site_id
        return params

    async def fetch_page(self, request: PageRequest) -> PageResult:
        token = await self.token_cache.get_token()
        settings = self.settings
        try:
            async with httpx.AsyncClient(
                timeout=settings.timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.get(
                    settings.jobs_url,
                    params=self.build_params(request),
                    headers={
                        "Authorization": f"Bearer {token.value}",
                        "Accept": "application/json",
                    },
                )
        except httpx.RequestError as exc:
            LOGGER.warning(
                json.dumps({"event": "workday_page_error", "error": exc.__class__.__name__})
            )
            raise UpstreamRequestError(
                None, f"{exc.__class__.__name__}: job postings endpoint unreachable"
            ) from exc

        if not response.is_success:
            body = redact_secrets(response.text, settings.secret_values())
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "workday_page_error",
                        "status_code": response.status_code,
                        "body": body,
                    }
                )
            )
            raise UpstreamRequestError(response.status_code, body)

        try:
            payload = json.loads(response.text)
        except ValueError as exc:
            LOGGER.warning(json.dumps({"event": "workday_page_error", "error": "invalid json"}))
            raise MalformedResponseBody(
                redact_secrets(response.text, settings.secret_values())
            ) from exc

        envelope = normalize_envelope(payload)
        items = envelope.items
        filtered = bool(request.job_site_id) and settings.filters_client_side
        if filtered:
            items = filter_by_job_site(items, request.job_site_id)

        if filtered:
            total = len(items)
        elif envelope.declared_total is not None:
            total = envelope.declared_total
        else:
            total = len(items)

        LOGGER.info(
            json.dumps(
                {
                    "event": "workday_page_fetched",
                    "limit": request.limit,
                    "offset": request.offset,
                    "shape": envelope.shape,
                    "upstream_count": len(envelope.items),
                    "returned": len(items),
                }
            )
        )
        return PageResult(
            items=items,
            total=total,
            raw_envelope=payload,
            upstream_count=len(envelope.items),
            declared_total=envelope.declared_total,
            filtered=filtered,
        )
