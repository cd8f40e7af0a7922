from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from wordlink_app.schemas.analytics import AnalyticsExport, AnalyticsPeriod, OwnerSummary
from wordlink_app.services.analytics_service import AnalyticsService, export_to_csv
from wordlink_app.dependencies import get_analytics_service
from wordlink_app.exceptions import AggregationFailure

router = APIRouter(prefix="/analytics", tags=["analytics"])

RETRY_AFTER_SECONDS = "30"


def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Analytics temporarily unavailable",
        headers={"Retry-After": RETRY_AFTER_SECONDS}
    )


@router.get("/summary", response_model=OwnerSummary)
def get_owner_summary(
    owner_id: str = Query(..., min_length=1, max_length=64),
    period: AnalyticsPeriod = AnalyticsPeriod.MONTH,
    top: int = Query(10, ge=1, le=100),
    analytics_service: AnalyticsService = Depends(get_analytics_service)
):
    """Totals, most clicked links and growth across all of an owner's links"""
    try:
        return analytics_service.summary(owner_id, period=period, top_n=top)
    except AggregationFailure:
        raise _unavailable()


@router.get("/export", response_model=AnalyticsExport)
def export_owner_analytics(
    owner_id: str = Query(..., min_length=1, max_length=64),
    period: AnalyticsPeriod = AnalyticsPeriod.MONTH,
    export_format: Literal["json", "csv"] = Query("json", alias="format"),
    analytics_service: AnalyticsService = Depends(get_analytics_service)
):
    """Raw clicks per link, as JSON or as a CSV download"""
    try:
        export = analytics_service.export(owner_id, period=period)
    except AggregationFailure:
        raise _unavailable()

    if export_format == "csv":
        filename = f"analytics-{datetime.now(timezone.utc):%Y-%m-%d}.csv"
        return Response(
            content=export_to_csv(export),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return export
