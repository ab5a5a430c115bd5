"""Admin endpoints: population-level style analytics.

In web mode these require a JWT whose email is listed in ADMIN_EMAILS. In
desktop mode the single local user may read and run aggregation.
"""

import logging
import os
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from api.style_models import AggregationRunResponse, StyleAggregateResponse
from style.analytics_aggregator import StyleAnalyticsAggregator, get_analytics_aggregator
from style.models import Subspecialty

logger = logging.getLogger(__name__)

REQUIRE_AUTH = os.getenv("REQUIRE_AUTH", "").lower() == "true"
_ADMIN_EMAILS = {
    e.strip().lower()
    for e in os.getenv("ADMIN_EMAILS", "").split(",")
    if e.strip()
}


router = APIRouter(prefix="/admin", tags=["admin"])


class AggregateRequest(BaseModel):
    """Request body for POST /admin/style-analytics/aggregate."""

    subspecialty: Subspecialty
    period_start: datetime
    period_end: datetime
    min_sample_size: Optional[int] = Field(default=None, ge=1)


async def _require_admin(request: Request) -> str:
    """Return the caller's user_id, or raise 401/403 if they are not an admin."""
    uid = getattr(request.state, "user_id", None)
    if not uid:
        raise HTTPException(status_code=401, detail="Authentication required.")
    if not REQUIRE_AUTH:
        return uid
    if not _ADMIN_EMAILS:
        raise HTTPException(status_code=403, detail="No admin users configured.")
    email = (getattr(request.state, "email", None) or "").lower()
    if email not in _ADMIN_EMAILS:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return uid


@router.get("/style-analytics", response_model=list[StyleAggregateResponse])
async def list_style_analytics(
    request: Request,
    subspecialty: Subspecialty = Query(...),
    limit: int = Query(default=10, ge=1, le=100),
    aggregator: StyleAnalyticsAggregator = Depends(get_analytics_aggregator),
):
    """Most recent aggregates for one subspecialty."""
    await _require_admin(request)
    aggregates = await aggregator.get_style_analytics(subspecialty, limit=limit)
    return [StyleAggregateResponse(**a.to_dict()) for a in aggregates]


@router.get("/style-analytics/summary")
async def style_analytics_summary(
    request: Request,
    aggregator: StyleAnalyticsAggregator = Depends(get_analytics_aggregator),
):
    await _require_admin(request)
    return await aggregator.get_analytics_summary()


@router.post("/style-analytics/aggregate")
async def aggregate_style_analytics(
    request: Request,
    body: AggregateRequest = Body(...),
    aggregator: StyleAnalyticsAggregator = Depends(get_analytics_aggregator),
):
    """Aggregate one subspecialty over an explicit window.

    ``aggregated`` is false when too few clinicians or edits fall in the
    window; nothing is written in that case.
    """
    admin_id = await _require_admin(request)
    if body.period_end <= body.period_start:
        raise HTTPException(status_code=422, detail="period_end must be after period_start.")
    aggregate = await aggregator.aggregate_style_analytics(
        body.subspecialty, body.period_start, body.period_end,
        min_sample_size=body.min_sample_size,
    )
    logger.info(
        "Admin %s aggregated %s: %s", admin_id, body.subspecialty.value, aggregate is not None,
    )
    return {
        "aggregated": aggregate is not None,
        "aggregate": aggregate.to_dict() if aggregate else None,
    }


@router.post("/style-analytics/run", response_model=AggregationRunResponse)
async def run_weekly_aggregation(
    request: Request,
    aggregator: StyleAnalyticsAggregator = Depends(get_analytics_aggregator),
):
    """Aggregate the past week for every subspecialty."""
    await _require_admin(request)
    result = await aggregator.run_weekly_aggregation()
    return AggregationRunResponse(**result)
