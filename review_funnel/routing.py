"""Sentiment-based routing of funnel submissions."""

from __future__ import annotations

from typing import Dict, List
from urllib.parse import quote

from .schemas import BusinessProfile, ReviewPlatform, RoutingDecision

# Ratings at or below this value never leave the business, whatever the reviewer picked.
PRIVATE_RATING_THRESHOLD = 3

PLATFORM_SEARCH_TEMPLATES: Dict[ReviewPlatform, str] = {
    ReviewPlatform.GOOGLE: "https://www.google.com/search?q={name}+reviews",
    ReviewPlatform.ZOMATO: "https://www.zomato.com/search?q={name}",
    ReviewPlatform.FACEBOOK: "https://www.facebook.com/search/pages/?q={name}",
    ReviewPlatform.JUSTDIAL: "https://www.justdial.com/search?q={name}",
}

ESCALATION_ENDPOINT = "https://wa.me/{number}?text={text}"


def is_private(rating: int, destination: ReviewPlatform) -> bool:
    return destination is ReviewPlatform.INTERNAL_ONLY or rating <= PRIVATE_RATING_THRESHOLD


def destination_url(destination: ReviewPlatform, business_name: str) -> str | None:
    """Return the platform search URL for the business, if the platform has one."""

    template = PLATFORM_SEARCH_TEMPLATES.get(destination)
    if template is None:
        return None
    return template.format(name=quote(business_name, safe=""))


def decide(rating: int, destination: ReviewPlatform, business_name: str) -> RoutingDecision:
    """Classify a submission as private or public and compute its redirect."""

    private = is_private(rating, destination)
    target_url = None if private else destination_url(destination, business_name)
    return RoutingDecision(
        is_private=private,
        target_url=target_url,
        escalation_eligible=private,
    )


def destination_options(business: BusinessProfile) -> List[ReviewPlatform]:
    """Destinations offered on the platform-select step, private option first."""

    enabled = [platform for platform in ReviewPlatform if platform in business.platforms]
    return [ReviewPlatform.INTERNAL_ONLY] + [p for p in enabled if p is not ReviewPlatform.INTERNAL_ONLY]


def escalation_message(business: BusinessProfile, rating: int, comment: str) -> str:
    return f'Escalation: {rating}★ feedback at {business.name}. Comment: "{comment}"'


def escalation_url(business: BusinessProfile, message: str) -> str:
    """Address *message* to the business's messaging contact."""

    return ESCALATION_ENDPOINT.format(
        number=business.whatsapp_number,
        text=quote(message, safe=""),
    )
