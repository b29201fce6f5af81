from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from jobfeed.config import WorkdaySettings

TOKEN_URL = "https://workday.test/ccx/oauth2/tenant/token"
REST_API_ENDPOINT = "https://workday.test/ccx/api/recruiting/v4/tenant/"
CLIENT_SECRET = "client-secret-value"
REFRESH_TOKEN = "refresh-token-value"


def make_postings(
    count: int,
    *,
    job_site_id: str = "site-a",
    start: int = 1,
) -> list[dict[str, Any]]:
    return [
        {
            "id": f"job-{index}",
            "title": f"Store Associate {index}",
            "jobSite": {"id": job_site_id, "descriptor": "Careers"},
        }
        for index in range(start, start + count)
    ]


class FakeClock:
    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


class FakeWorkday:
    """In-memory stand-in for the Workday token and jobPostings endpoints."""

    def __init__(
        self,
        postings: list[Any] | None = None,
        *,
        envelope: str = "data",
        declare_total: bool = True,
        expires_in: Any = 3600,
    ) -> None:
        self.postings = list(postings or [])
        self.envelope = envelope
        self.declare_total = declare_total
        self.expires_in = expires_in
        self.token_delay = 0.0
        self.token_response: httpx.Response | None = None
        self.jobs_response: httpx.Response | None = None
        self.token_error: Exception | None = None
        self.jobs_error: Exception | None = None
        self.token_forms: list[dict[str, str]] = []
        self.issued_tokens: list[str] = []
        self.page_requests: list[dict[str, str]] = []
        self.authorization_headers: list[str | None] = []

    @property
    def token_calls(self) -> int:
        return len(self.token_forms)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path.endswith("/token"):
            return await self._token(request)
        if request.method == "GET" and request.url.path.endswith("/jobPostings"):
            return self._jobs(request)
        return httpx.Response(404, text="not found")

    async def _token(self, request: httpx.Request) -> httpx.Response:
        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        self.token_forms.append(form)
        if self.token_delay:
            await asyncio.sleep(self.token_delay)
        if self.token_error is not None:
            raise self.token_error
        if self.token_response is not None:
            return self.token_response
        token = f"access-{len(self.token_forms)}"
        self.issued_tokens.append(token)
        payload: dict[str, Any] = {"access_token": token, "token_type": "Bearer"}
        if self.expires_in is not None:
            payload["expires_in"] = self.expires_in
        return httpx.Response(200, json=payload)

    def _jobs(self, request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        self.page_requests.append(params)
        self.authorization_headers.append(request.headers.get("authorization"))
        if self.jobs_error is not None:
            raise self.jobs_error
        if self.jobs_response is not None:
            return self.jobs_response

        corpus = self.postings
        if "jobSite" in params:
            corpus = [
                posting
                for posting in corpus
                if isinstance(posting, dict)
                and posting.get("jobSite", {}).get("id") == params["jobSite"]
            ]
        limit = int(params.get("limit", "20"))
        offset = int(params.get("offset", "0"))
        page = corpus[offset : offset + limit]

        if self.envelope == "array":
            body: Any = page
        elif self.envelope == "jobPostings":
            body = {"jobPostings": page}
            if self.declare_total:
                body["count"] = len(corpus)
        else:
            body = {"data": page}
            if self.declare_total:
                body["total"] = len(corpus)
        return httpx.Response(200, text=json.dumps(body))


@pytest.fixture
def settings() -> WorkdaySettings:
    return WorkdaySettings(
        token_url=TOKEN_URL,
        rest_api_endpoint=REST_API_ENDPOINT,
        client_id="client-id",
        client_secret=CLIENT_SECRET,
        refresh_token=REFRESH_TOKEN,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workday() -> FakeWorkday:
    return FakeWorkday()


@pytest.fixture
def postings_factory():
    return make_postings
