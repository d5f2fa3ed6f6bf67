"""OpenAI-backed helpers behind the dashboard's AI panels.

Every call is one-shot. Failures never escape: callers get an ``AIResult``
tagged ``degraded`` carrying the panel's placeholder text and the reason.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from textwrap import dedent
from typing import Any, Iterable, List, Sequence

from openai import AsyncOpenAI, OpenAIError

from .config import get_settings
from .schemas import AIResult, GroundingSource, Review

DRAFT_FALLBACK = "Thank you for your valuable feedback."
DRAFT_EMPTY = "Thank you for your feedback."
STRATEGY_FALLBACK = "Unable to generate strategic insights at this time."
MARKET_FALLBACK = (
    "Our global trend monitors are currently undergoing maintenance. Please try again in a few moments."
)
MARKET_EMPTY = "No trends found for this niche."
LOCAL_FALLBACK = (
    "The local mapping service is temporarily unresponsive. We're working to restore the link."
)
LOCAL_EMPTY = "No local insights available for this region."

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptSpec:
    """Container describing how to call the LLM for one panel."""

    user_prompt: str
    model: str
    system_prompt: str | None = None
    temperature: float | None = 0.7
    max_tokens: int = 600
    web_search: bool = False


@dataclass(frozen=True)
class Completion:
    text: str
    sources: List[GroundingSource]


class CompletionUnavailable(Exception):
    """The model could not be reached or returned nothing usable."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


ClientCache = tuple[str, AsyncOpenAI]
_client_cache: ClientCache | None = None


def _get_client() -> AsyncOpenAI | None:
    """Return a cached OpenAI client when an API key is configured."""

    global _client_cache
    api_key = get_settings().openai_api_key
    if not api_key:
        return None
    if _client_cache and _client_cache[0] == api_key:
        return _client_cache[1]
    client = AsyncOpenAI(api_key=api_key)
    _client_cache = (api_key, client)
    return client


def _extract_sources(message: Any) -> List[GroundingSource]:
    """Collect URL citations attached to a search-grounded answer."""

    sources: List[GroundingSource] = []
    for annotation in getattr(message, "annotations", None) or []:
        citation = getattr(annotation, "url_citation", None)
        if getattr(annotation, "type", None) != "url_citation" or citation is None:
            continue
        uri = getattr(citation, "url", "")
        if uri and all(source.uri != uri for source in sources):
            sources.append(GroundingSource(title=getattr(citation, "title", "") or uri, uri=uri))
    return sources


async def _complete(spec: PromptSpec) -> Completion:
    client = _get_client()
    if client is None:
        raise CompletionUnavailable("no OpenAI API key configured")

    messages = []
    if spec.system_prompt:
        messages.append({"role": "system", "content": spec.system_prompt.strip()})
    messages.append({"role": "user", "content": spec.user_prompt.strip()})

    kwargs: dict[str, Any] = {"model": spec.model, "messages": messages, "max_tokens": spec.max_tokens}
    if spec.temperature is not None:
        kwargs["temperature"] = spec.temperature
    if spec.web_search:
        kwargs["web_search_options"] = {}

    try:
        response = await client.chat.completions.create(**kwargs)
    except OpenAIError as exc:
        raise CompletionUnavailable(f"{type(exc).__name__}: {exc}") from exc

    message = response.choices[0].message if response.choices else None
    text = (message.content or "").strip() if message else ""
    return Completion(text=text, sources=_extract_sources(message) if message else [])


def _degrade(operation: str, text: str, reason: str) -> AIResult:
    logger.warning("AI %s degraded: %s", operation, reason)
    return AIResult.degraded(text, reason)


async def draft_reply(review_text: str, rating: int, business_name: str) -> AIResult:
    """Draft a short owner reply to a review."""

    tone = (
        "Focus on resolution and empathy."
        if rating <= 3
        else "Focus on gratitude and invite them back."
    )
    spec = PromptSpec(
        system_prompt=f"You are the customer success manager at {business_name}.",
        user_prompt=dedent(
            f"""
            Write a professional, empathetic and concise response to a {rating}-star review.
            Review text: "{review_text}"
            Keep it under 50 words. {tone}
            """
        ),
        model=get_settings().draft_model,
        temperature=0.6,
        max_tokens=200,
    )
    try:
        completion = await _complete(spec)
    except CompletionUnavailable as exc:
        return _degrade("draft_reply", DRAFT_FALLBACK, exc.reason)
    if not completion.text:
        return _degrade("draft_reply", DRAFT_EMPTY, "empty completion")
    return AIResult.ok(completion.text)


def _review_context(reviews: Iterable[Review]) -> str:
    return "\n".join(f"Rating: {review.rating}, Comment: {review.text}" for review in reviews)


async def strategic_insights(reviews: Sequence[Review], business_name: str) -> AIResult:
    """Turn the review inbox into a numbered three-point improvement plan."""

    if not reviews:
        return _degrade("strategic_insights", STRATEGY_FALLBACK, "no reviews to analyse")

    spec = PromptSpec(
        system_prompt="You are a hospitality operations strategist.",
        user_prompt=dedent(
            f"""
            Analyze these customer reviews for {business_name} and provide a 3-point strategic improvement plan.
            Answer with exactly three numbered lines and nothing else.

            Reviews:
            {_review_context(reviews)}
            """
        ),
        model=get_settings().insight_model,
        temperature=0.5,
        max_tokens=700,
    )
    try:
        completion = await _complete(spec)
    except CompletionUnavailable as exc:
        return _degrade("strategic_insights", STRATEGY_FALLBACK, exc.reason)
    if not completion.text:
        return _degrade("strategic_insights", STRATEGY_FALLBACK, "empty completion")
    return AIResult.ok(completion.text)


async def market_trends(niche: str) -> AIResult:
    """Search-grounded summary of customer service trends in *niche*."""

    spec = PromptSpec(
        user_prompt=(
            f"What are the top 3 customer service trends in the {niche} industry this year? "
            "Focus on competitive advantages."
        ),
        model=get_settings().search_model,
        temperature=None,
        max_tokens=800,
        web_search=True,
    )
    try:
        completion = await _complete(spec)
    except CompletionUnavailable as exc:
        return _degrade("market_trends", MARKET_FALLBACK, exc.reason)
    return AIResult.ok(completion.text or MARKET_EMPTY, completion.sources)


async def local_insights(business_type: str, lat: float | None = None, lng: float | None = None) -> AIResult:
    """Search-grounded view of top-rated competitors around a location.

    Missing coordinates are replaced by the configured fallback location.
    """

    settings = get_settings()
    if lat is None or lng is None:
        lat, lng = settings.fallback_coordinates

    spec = PromptSpec(
        user_prompt=(
            f"What are the top rated {business_type} businesses near latitude {lat}, longitude {lng}? "
            "Provide a summary of their reputation and how a competitor could differentiate."
        ),
        model=settings.search_model,
        temperature=None,
        max_tokens=800,
        web_search=True,
    )
    try:
        completion = await _complete(spec)
    except CompletionUnavailable as exc:
        return _degrade("local_insights", LOCAL_FALLBACK, exc.reason)
    return AIResult.ok(completion.text or LOCAL_EMPTY, completion.sources)
