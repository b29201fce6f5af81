from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from common.utils import now_utc_iso
from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from jobfeed.aggregator import AggregationRequest, Aggregator
from jobfeed.config import WorkdaySettings
from jobfeed.errors import WorkdayError
from jobfeed.workday import MAX_PAGE_SIZE, Clock, PageFetcher, PageRequest, TokenCache

DEFAULT_LIMIT = 50
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}
LOGGER = logging.getLogger("jobfeed.api")


class JobsResponse(BaseModel):
    data: list[Any]
    total: int


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    routes: dict[str, dict[str, float | int]]


class MetricsStore:
    """Per-route request counters kept in memory for the life of the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals = {"requests": 0, "errors": 0}
        self._routes: dict[str, dict[str, float | int]] = {}

    def observe(self, *, route: str, status_code: int, duration_ms: float) -> None:
        failed = int(status_code >= 400)
        with self._lock:
            self._totals["requests"] += 1
            self._totals["errors"] += failed
            counters = self._routes.setdefault(
                route, {"count": 0, "errors": 0, "latency_ms_max": 0.0}
            )
            counters["count"] += 1
            counters["errors"] += failed
            counters["latency_ms_max"] = max(counters["latency_ms_max"], duration_ms)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                routes={route: dict(counters) for route, counters in self._routes.items()},
            )


@dataclass
class JobFeed:
    settings: WorkdaySettings
    token_cache: TokenCache
    fetcher: PageFetcher
    aggregator: Aggregator

    @classmethod
    def build(
        cls,
        settings: WorkdaySettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock | None = None,
    ) -> JobFeed:
        token_cache = TokenCache(settings, transport=transport, clock=clock)
        fetcher = PageFetcher(settings, token_cache, transport=transport)
        return cls(
            settings=settings,
            token_cache=token_cache,
            fetcher=fetcher,
            aggregator=Aggregator(fetcher),
        )


def create_app(
    *,
    settings: WorkdaySettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.metrics = MetricsStore()
        yield

    app = FastAPI(title="Workday Job Feed", version="0.1.0", lifespan=lifespan)
    app.state.feed = None

    def resolve_feed(request: Request) -> JobFeed:
        # Settings are read on first use so a missing variable surfaces as a 500
        # on the request rather than a crash at import time.
        feed: JobFeed | None = request.app.state.feed
        if feed is None:
            resolved_settings = settings if settings is not None else WorkdaySettings.from_env()
            feed = JobFeed.build(resolved_settings, transport=transport, clock=clock)
            request.app.state.feed = feed
        return feed

    @app.exception_handler(WorkdayError)
    async def workday_error_handler(request: Request, exc: WorkdayError) -> JSONResponse:
        LOGGER.error(
            json.dumps(
                {
                    "event": "workday_error",
                    "request_id": getattr(request.state, "request_id", None),
                    "error_type": exc.__class__.__name__,
                    "error": exc.message,
                }
            )
        )
        return JSONResponse(
            status_code=500,
            content={"error": exc.message, "details": exc.details},
        )

    @app.middleware("http")
    async def cors_middleware(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    def record_request(
        request: Request,
        request_id: str,
        status_code: int,
        started: float,
    ) -> dict[str, Any]:
        duration_ms = round((time.perf_counter() - started) * 1000, 3)
        route = f"{request.method} {request.url.path}"
        request.app.state.metrics.observe(
            route=route,
            status_code=status_code,
            duration_ms=duration_ms,
        )
        return {
            "event": "request_complete",
            "request_id": request_id,
            "route": route,
            "status_code": status_code,
            "duration_ms": duration_ms,
        }

    @app.middleware("http")
    async def request_log_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            event = record_request(request, request_id, 500, started)
            LOGGER.exception(json.dumps({**event, "error": exc.__class__.__name__}))
            return JSONResponse(
                status_code=500,
                content={"error": "Unexpected error", "request_id": request_id},
                headers={"x-request-id": request_id, **CORS_HEADERS},
            )

        LOGGER.info(json.dumps(record_request(request, request_id, response.status_code, started)))
        response.headers["x-request-id"] = request_id
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "jobfeed"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.get("/api/jobs", response_model=JobsResponse)
    async def list_jobs(
        request: Request,
        limit: int = Query(default=DEFAULT_LIMIT, ge=1),
        offset: int = Query(default=0, ge=0),
        job_site: str | None = Query(default=None, alias="jobSite"),
        fetch_all: bool = Query(default=False, alias="all"),
    ) -> JobsResponse:
        feed = resolve_feed(request)
        job_site_id = (job_site or "").strip() or None

        if fetch_all or limit > MAX_PAGE_SIZE:
            max_jobs = limit if limit > MAX_PAGE_SIZE else feed.settings.max_jobs_cap
            result = await feed.aggregator.aggregate(
                AggregationRequest(
                    max_jobs=min(max_jobs, feed.settings.max_jobs_cap),
                    page_size=MAX_PAGE_SIZE,
                    initial_offset=offset,
                    job_site_id=job_site_id,
                )
            )
        else:
            result = await feed.fetcher.fetch_page(
                PageRequest(limit=limit, offset=offset, job_site_id=job_site_id)
            )
        return JobsResponse(**result.to_payload())

    return app


app = create_app()
