from __future__ import annotations

import json
import logging
import math
from typing import Any

from pydantic import BaseModel, Field

from jobfeed.workday import MAX_PAGE_SIZE, PageFetcher, PageRequest, PageResult

# Extra pages allowed on top of ceil(max_jobs / page_size) to make up for
# postings dropped by client-side job site filtering.
PAGE_BUDGET_SLACK = 2
LOGGER = logging.getLogger("jobfeed.aggregator")


class AggregationRequest(BaseModel):
    max_jobs: int = Field(..., gt=0)
    page_size: int = Field(default=MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    initial_offset: int = Field(default=0, ge=0)
    job_site_id: str | None = None


def posting_key(posting: Any) -> str | None:
    if isinstance(posting, dict):
        value = posting.get("id")
        if value is not None and str(value).strip():
            return str(value)
    return None


class Aggregator:
    """Collects up to ``max_jobs`` postings by walking Workday's offset pages.

    Nothing is kept between calls and any page failure aborts the whole
    aggregation; a truncated result would read as "that's every job".
    """

    def __init__(self, fetcher: PageFetcher) -> None:
        self.fetcher = fetcher

    async def aggregate(self, request: AggregationRequest) -> PageResult:
        collected: list[Any] = []
        seen: set[str] = set()
        offset = request.initial_offset
        declared_total: int | None = None
        filtered = False
        pages_fetched = 0
        upstream_seen = 0
        max_pages = math.ceil(request.max_jobs / request.page_size) + PAGE_BUDGET_SLACK

        while len(collected) < request.max_jobs and pages_fetched < max_pages:
            limit = min(request.page_size, request.max_jobs - len(collected))
            page = await self.fetcher.fetch_page(
                PageRequest(limit=limit, offset=offset, job_site_id=request.job_site_id)
            )
            pages_fetched += 1
            upstream_seen += page.upstream_count
            filtered = filtered or page.filtered
            if page.upstream_count == 0:
                break

            for posting in page.items:
                key = posting_key(posting)
                if key is not None:
                    if key in seen:
                        continue
                    seen.add(key)
                collected.append(posting)

            if declared_total is None:
                declared_total = page.declared_total
            if declared_total is not None and offset + page.upstream_count >= declared_total:
                break
            if page.upstream_count < limit:
                break
            offset += page.upstream_count

        items = collected[: request.max_jobs]
        if declared_total is not None and not filtered:
            total = declared_total
        else:
            total = len(items)

        LOGGER.info(
            json.dumps(
                {
                    "event": "workday_aggregation_complete",
                    "max_jobs": request.max_jobs,
                    "page_size": request.page_size,
                    "pages_fetched": pages_fetched,
                    "returned": len(items),
                    "total": total,
                }
            )
        )
        return PageResult(
            items=items,
            total=total,
            upstream_count=upstream_seen,
            declared_total=declared_total,
            filtered=filtered,
        )
