"""Review funnel endpoints."""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Header, HTTPException, Query

from ..config import get_settings
from ..funnel import FunnelController, funnel_registry
from ..schemas import EventRequest, FunnelView, LinkResolution, ShareLink
from ..tenants import BusinessNotFoundError, resolve_business, resolve_link

QR_SERVICE_URL = "https://api.qrserver.com/v1/create-qr-code/"
DEFAULT_BROWSER_SESSION = "anonymous"

router = APIRouter(prefix="/funnel", tags=["funnel"])


def _controller(business_id: str, session_id: str) -> FunnelController:
    try:
        business = resolve_business(business_id)
    except BusinessNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return funnel_registry.controller(session_id, business)


@router.get("/health")
async def healthcheck() -> dict[str, str]:
    """Simple health check endpoint."""

    return {"status": "ok"}


@router.get("/link", response_model=LinkResolution)
async def resolve_review_link(
    biz: Optional[str] = Query(default=None),
    loc: Optional[str] = Query(default=None),
    id: Optional[str] = Query(default=None),
) -> LinkResolution:
    """Tell the client which view a shared link opens."""

    resolution = resolve_link({"biz": biz, "loc": loc, "id": id})
    if resolution.view == "error":
        raise HTTPException(status_code=404, detail=resolution.model_dump())
    return resolution


@router.post("/{business_id}/mount", response_model=FunnelView)
async def mount_funnel(
    business_id: str,
    x_session_id: str = Header(default=DEFAULT_BROWSER_SESSION),
) -> FunnelView:
    """Open the funnel, resuming any unexpired session for this browser."""

    try:
        business = resolve_business(business_id)
    except BusinessNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return funnel_registry.mount(x_session_id, business).view()


@router.get("/{business_id}", response_model=FunnelView)
async def current_funnel(
    business_id: str,
    x_session_id: str = Header(default=DEFAULT_BROWSER_SESSION),
) -> FunnelView:
    return _controller(business_id, x_session_id).view()


@router.post("/{business_id}/events", response_model=FunnelView)
async def post_event(
    business_id: str,
    payload: EventRequest,
    x_session_id: str = Header(default=DEFAULT_BROWSER_SESSION),
) -> FunnelView:
    """Apply a reviewer action and return the new view plus any actions to open."""

    controller = _controller(business_id, x_session_id)
    actions = await controller.dispatch(payload.event)
    return controller.view(actions)


@router.get("/{business_id}/share", response_model=ShareLink)
async def share_link(business_id: str) -> ShareLink:
    """Public review link and QR code for printing at the venue."""

    try:
        business = resolve_business(business_id)
    except BusinessNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    base = urlsplit(get_settings().public_base_url)
    public_link = urlunsplit((base.scheme, base.netloc, base.path or "/", urlencode({"biz": business.id}), ""))
    qr_image_url = (
        f"{QR_SERVICE_URL}?size=1000x1000&data={quote(public_link, safe='')}"
        "&bgcolor=ffffff&format=png&margin=2&ecc=H"
    )
    return ShareLink(business_id=business.id, public_link=public_link, qr_image_url=qr_image_url)
