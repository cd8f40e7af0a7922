import time

from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.responses import RedirectResponse
from wordlink_app.services.link_service import LinkService
from wordlink_app.queue.models import ClickMessage
from wordlink_app.dependencies import get_link_service, get_queue
from wordlink_app.queue.strategies import QueueStrategy
from wordlink_app.exceptions import MalformedPath, NotFound
from wordlink_app.observability import REDIRECTS, CLICKS_QUEUED, CLICKS_DROPPED
from wordlink_app.utils.request_utils import derive_visitor_id, extract_utm_params, get_client_ip
from wordlink_app.config import settings

router = APIRouter(tags=["redirect"])

REDIRECT_HEADERS = {
    # Every visit must reach us to be counted
    "Cache-Control": "private, no-store",
    "X-Robots-Tag": "noindex, nofollow",
}


def _mobile_hint(value):
    if value == "?1":
        return True
    if value == "?0":
        return False
    return None


def build_click_message(request: Request, link_id: int, response_time_ms: int) -> ClickMessage:
    headers = request.headers
    peer = request.client.host if request.client else None
    ip_address = get_client_ip(headers, peer, settings.trusted_proxies)
    user_agent = headers.get("user-agent")

    return ClickMessage(
        link_id=link_id,
        visitor_id=derive_visitor_id(
            ip_address, user_agent, headers.get("accept-language"), settings.secret_key
        ),
        ip_address=ip_address,
        user_agent=user_agent,
        referrer=headers.get("referer"),
        country_hint=headers.get("cf-ipcountry"),
        mobile_hint=_mobile_hint(headers.get("sec-ch-ua-mobile")),
        response_time_ms=response_time_ms,
        **extract_utm_params(request.query_params),
    )


@router.get("/{path:path}", include_in_schema=False)
async def redirect_keyword_path(
    path: str,
    request: Request,
    link_service: LinkService = Depends(get_link_service),
    queue: QueueStrategy = Depends(get_queue)
):
    """
    Redirect a keyword path to its destination.

    Flow:
    1. Parse + resolve (cache first, then the unique path index)
    2. Publish a click message to the bounded queue (never waits on recording)
    3. 302 to the destination

    Malformed and unknown paths are both a plain 404.
    """
    started = time.perf_counter()

    try:
        link = await link_service.resolve_path(path)
    except MalformedPath:
        REDIRECTS.labels(outcome="malformed").inc()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link not found")
    except NotFound:
        REDIRECTS.labels(outcome="not_found").inc()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link not found")

    response_time_ms = int((time.perf_counter() - started) * 1000)
    message = build_click_message(request, link.id, response_time_ms)

    if await queue.publish(settings.queue_name, message):
        CLICKS_QUEUED.inc()
    else:
        CLICKS_DROPPED.labels(reason="queue_unavailable").inc()

    REDIRECTS.labels(outcome="found").inc()
    return RedirectResponse(
        url=link.destination_url,
        status_code=status.HTTP_302_FOUND,
        headers=REDIRECT_HEADERS,
    )
