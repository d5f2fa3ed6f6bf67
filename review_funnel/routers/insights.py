"""Dashboard endpoints: review inbox, analytics and AI panels."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Set, Tuple

from fastapi import APIRouter, HTTPException, Query

from .. import llm
from ..reviews import review_inbox
from ..schemas import (
    BusinessProfile,
    DraftRequest,
    InsightResponse,
    Review,
    ReviewPlatform,
    ReviewStats,
    Visibility,
)
from ..tenants import BusinessNotFoundError, resolve_business

DEFAULT_NICHE = "Hospitality and Fine Dining"

router = APIRouter(prefix="/insights", tags=["insights"])

_in_flight: Set[Tuple[str, str]] = set()


@asynccontextmanager
async def _panel_request(panel: str, subject: str) -> AsyncIterator[None]:
    """Allow one pending request per panel and subject."""

    key = (panel, subject)
    if key in _in_flight:
        raise HTTPException(status_code=409, detail=f"A {panel} request for '{subject}' is already running.")
    _in_flight.add(key)
    try:
        yield
    finally:
        _in_flight.discard(key)


def _business(business_id: str) -> BusinessProfile:
    try:
        return resolve_business(business_id)
    except BusinessNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/reviews/{business_id}", response_model=list[Review])
async def list_reviews(
    business_id: str,
    platform: Optional[ReviewPlatform] = Query(default=None),
    visibility: Optional[Visibility] = Query(default=None),
) -> list[Review]:
    return review_inbox.list_for_business(_business(business_id).id, platform, visibility)


@router.get("/analytics/{business_id}", response_model=ReviewStats)
async def review_analytics(business_id: str) -> ReviewStats:
    return review_inbox.stats(_business(business_id).id)


@router.post("/reviews/{review_id}/draft", response_model=Review)
async def draft_for_review(review_id: str) -> Review:
    """Generate an AI reply and attach it to an inbox review."""

    review = review_inbox.get(review_id)
    if review is None:
        raise HTTPException(status_code=404, detail=f"No review found with id '{review_id}'.")
    business = _business(review.business_id)

    async with _panel_request("draft", review_id):
        result = await llm.draft_reply(review.text, review.rating, business.name)
    return review_inbox.attach_draft(review_id, result.text)


@router.post("/draft", response_model=InsightResponse)
async def draft_reply(payload: DraftRequest) -> InsightResponse:
    async with _panel_request("draft", payload.business_name.lower()):
        result = await llm.draft_reply(payload.review_text, payload.rating, payload.business_name)
    return InsightResponse.from_result(result)


@router.post("/strategy/{business_id}", response_model=InsightResponse)
async def strategy(business_id: str) -> InsightResponse:
    """Improvement plan built from the business's reviews, one item per line."""

    business = _business(business_id)
    async with _panel_request("strategy", business.id):
        result = await llm.strategic_insights(review_inbox.list_for_business(business.id), business.name)
    return InsightResponse.from_result(result, split_lines=True)


@router.get("/market-trends", response_model=InsightResponse)
async def market_trends(niche: str = Query(default=DEFAULT_NICHE, min_length=2)) -> InsightResponse:
    async with _panel_request("market-trends", niche.lower()):
        result = await llm.market_trends(niche)
    return InsightResponse.from_result(result)


@router.get("/local", response_model=InsightResponse)
async def local_insights(
    business_type: str = Query(default=DEFAULT_NICHE, min_length=2),
    lat: Optional[float] = Query(default=None, ge=-90, le=90),
    lng: Optional[float] = Query(default=None, ge=-180, le=180),
) -> InsightResponse:
    async with _panel_request("local", business_type.lower()):
        result = await llm.local_insights(business_type, lat, lng)
    return InsightResponse.from_result(result)
