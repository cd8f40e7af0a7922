from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from wordlink_app.schemas.link import BulkLinkCreate, BulkLinkResult, LinkCreate, LinkUpdate, LinkResponse, Quota
from wordlink_app.schemas.analytics import AnalyticsPeriod, LinkAnalytics
from wordlink_app.services.link_service import LinkService
from wordlink_app.services.analytics_service import AnalyticsService
from wordlink_app.dependencies import get_link_service, get_analytics_service, get_quota
from wordlink_app.exceptions import (
    AggregationFailure,
    DuplicatePath,
    IdentifierNotOwned,
    InvalidLink,
    NotFound,
)

router = APIRouter(prefix="/links", tags=["links"])

RETRY_AFTER_SECONDS = "30"


def _not_found(link_id: int) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Link {link_id} not found")


@router.post("", response_model=LinkResponse, status_code=status.HTTP_201_CREATED)
async def create_link(
    link_data: LinkCreate,
    link_service: LinkService = Depends(get_link_service),
    quota: Quota = Depends(get_quota)
):
    """Create a keyword link (async for cache I/O)"""
    if len(link_data.keywords) > quota.max_keywords:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Your plan allows at most {quota.max_keywords} keywords per link"
        )
    try:
        return await link_service.create(link_data)
    except DuplicatePath as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Path already in use: /{e.path}")
    except IdentifierNotOwned as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Identifier not owned: {e}")
    except InvalidLink as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/bulk", response_model=BulkLinkResult, status_code=status.HTTP_207_MULTI_STATUS)
async def create_links_bulk(
    payload: BulkLinkCreate,
    link_service: LinkService = Depends(get_link_service),
    quota: Quota = Depends(get_quota)
):
    """Create up to 100 links; each item succeeds or fails on its own"""
    return await link_service.create_many(payload.links, quota=quota)


@router.get("", response_model=List[LinkResponse])
async def list_links(
    owner_id: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    link_service: LinkService = Depends(get_link_service)
):
    return link_service.list_links(owner_id=owner_id, skip=skip, limit=limit)


@router.get("/{link_id}", response_model=LinkResponse)
async def get_link(
    link_id: int,
    link_service: LinkService = Depends(get_link_service)
):
    """Link details, including inactive and expired links"""
    try:
        return link_service.get_link(link_id)
    except NotFound:
        raise _not_found(link_id)


@router.patch("/{link_id}", response_model=LinkResponse)
async def update_link(
    link_id: int,
    changes: LinkUpdate,
    link_service: LinkService = Depends(get_link_service)
):
    try:
        return await link_service.update_link(link_id, changes)
    except NotFound:
        raise _not_found(link_id)
    except InvalidLink as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.delete("/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_link(
    link_id: int,
    link_service: LinkService = Depends(get_link_service)
):
    """Deactivate a link (soft delete, async for cache invalidation)"""
    try:
        await link_service.deactivate_link(link_id)
    except NotFound:
        raise _not_found(link_id)


@router.get("/{link_id}/analytics", response_model=LinkAnalytics)
def get_link_analytics(
    link_id: int,
    period: AnalyticsPeriod = AnalyticsPeriod.WEEK,
    include_bots: bool = False,
    top: int = Query(10, ge=1, le=100),
    analytics_service: AnalyticsService = Depends(get_analytics_service)
):
    """Timeline and breakdowns for one link over a trailing period"""
    try:
        return analytics_service.aggregate(link_id, period=period, include_bots=include_bots, top_n=top)
    except NotFound:
        raise _not_found(link_id)
    except AggregationFailure:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Analytics temporarily unavailable",
            headers={"Retry-After": RETRY_AFTER_SECONDS}
        )
