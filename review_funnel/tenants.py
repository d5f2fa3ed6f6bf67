"""Static business registry and review-link resolution."""

from __future__ import annotations

import re
from typing import Dict, Mapping

from .schemas import BusinessProfile, LinkResolution, ReviewPlatform, TeamMember

LINK_PARAM_ALIASES = ("biz", "loc", "id")
DEFAULT_BUSINESS_ID = "merlin-cambridge-001"

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class BusinessNotFoundError(LookupError):
    """Raised when a review link points at an unknown business."""

    def __init__(self, business_id: str) -> None:
        super().__init__(f"Business '{business_id}' was not found in the registry.")
        self.business_id = business_id


BUSINESS_REGISTRY: Dict[str, BusinessProfile] = {
    "merlin-cambridge-001": BusinessProfile(
        id="merlin-cambridge-001",
        name="Merlin Cambridge",
        owner_name="Alex Johnson",
        email="admin@merlin-hospitality.com",
        whatsapp_number="919876543210",
        plan="pro",
        platforms=frozenset(
            {
                ReviewPlatform.GOOGLE,
                ReviewPlatform.FACEBOOK,
                ReviewPlatform.ZOMATO,
                ReviewPlatform.SWIGGY,
                ReviewPlatform.JUSTDIAL,
            }
        ),
        team=(
            TeamMember(id="1", name="Sarah", role="editor", status="online"),
            TeamMember(id="2", name="Mike", role="viewer", status="online"),
        ),
    ),
    "crystal-lounge-002": BusinessProfile(
        id="crystal-lounge-002",
        name="Crystal Lounge",
        owner_name="Elena Ross",
        email="hello@crystallounge.res",
        whatsapp_number="447890123456",
        plan="pro",
        platforms=frozenset(
            {
                ReviewPlatform.GOOGLE,
                ReviewPlatform.YELP,
                ReviewPlatform.TRIPADVISOR,
                ReviewPlatform.FACEBOOK,
            }
        ),
        team=(TeamMember(id="1", name="James", role="admin", status="online"),),
    ),
}


def sanitize_business_id(raw: str) -> str:
    """Strip everything outside ``[A-Za-z0-9_-]`` from a link identifier."""

    return _UNSAFE_ID_CHARS.sub("", raw)


def resolve_business(business_id: str) -> BusinessProfile:
    """Return the profile for *business_id* or raise ``BusinessNotFoundError``."""

    clean_id = sanitize_business_id(business_id)
    profile = BUSINESS_REGISTRY.get(clean_id)
    if profile is None:
        raise BusinessNotFoundError(clean_id)
    return profile


def resolve_link(params: Mapping[str, str | None]) -> LinkResolution:
    """Map review-link query parameters to the view the client should open.

    The first non-empty alias wins. No identifier means the operator dashboard
    for the default business.
    """

    raw_id = next((params[alias] for alias in LINK_PARAM_ALIASES if params.get(alias)), None)
    if raw_id is None:
        return LinkResolution(view="dashboard", business=BUSINESS_REGISTRY[DEFAULT_BUSINESS_ID])

    try:
        profile = resolve_business(raw_id)
    except BusinessNotFoundError as exc:
        return LinkResolution(view="error", message=str(exc))
    return LinkResolution(view="client-flow", business=profile)
