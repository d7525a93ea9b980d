"""
Control-hub endpoints: aggregate ride analytics for operations staff.
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.api.db import get_db
from src.api.schemas.ride import HeatmapPointPublic, HubSummaryPublic, RejectionPublic
from src.api.services import analytics

router = APIRouter(prefix="/hub", tags=["hub"])


@router.get(
    "/summary",
    response_model=HubSummaryPublic,
    summary="Hub analytics summary",
    description="Average time-to-accept and trip duration over recent rides, plus rejection counts by reason.",
    operation_id="hub_summary",
)
def get_summary(
    window: int = Query(default=100, ge=1, le=1000, description="Number of most recent rides to average over."),
    db: Session = Depends(get_db),
) -> HubSummaryPublic:
    """Return hub analytics."""
    s = analytics.hub_summary(db, window=window)
    return HubSummaryPublic(
        rides_considered=s.rides_considered,
        avg_minutes_to_accept=s.avg_minutes_to_accept,
        avg_trip_minutes=s.avg_trip_minutes,
        rejection_counts=s.rejection_counts,
    )


@router.get(
    "/rejections",
    response_model=List[RejectionPublic],
    summary="Recent rejections",
    description="Most recent driver rejections, newest first.",
    operation_id="hub_recent_rejections",
)
def get_recent_rejections(
    limit: int = Query(default=50, ge=1, le=200, description="Max rejections to return."),
    db: Session = Depends(get_db),
) -> List[RejectionPublic]:
    """Return recent rejections."""
    return [RejectionPublic.model_validate(r) for r in analytics.recent_rejections(db, limit=limit)]


@router.get(
    "/heatmap",
    response_model=List[HeatmapPointPublic],
    summary="Request heatmap",
    description="Pickup request density on a 0.01-degree grid, densest first.",
    operation_id="hub_request_heatmap",
)
def get_heatmap(
    limit: int = Query(default=50, ge=1, le=500, description="Max buckets to return."),
    db: Session = Depends(get_db),
) -> List[HeatmapPointPublic]:
    """Return heatmap buckets."""
    return [
        HeatmapPointPublic(lat=p.lat, lng=p.lng, count=p.count)
        for p in analytics.request_heatmap(db, limit=limit)
    ]
