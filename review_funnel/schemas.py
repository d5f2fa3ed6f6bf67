"""Pydantic models and enums for the review funnel API."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class FunnelStep(str, Enum):
    """Enumerate the steps of the review collection funnel."""

    LANDING = "landing"
    RATING = "rating"
    FEEDBACK = "feedback"
    PLATFORM_SELECT = "platform-select"
    THANK_YOU = "thank-you"


class ReviewPlatform(str, Enum):
    """Destinations a reviewer can sync feedback toward."""

    GOOGLE = "google"
    ZOMATO = "zomato"
    FACEBOOK = "facebook"
    SWIGGY = "swiggy"
    YELP = "yelp"
    TRIPADVISOR = "tripadvisor"
    JUSTDIAL = "justdial"
    INTERNAL_ONLY = "internal_only"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


# ---------------------------------------------------------------------------
# Tenants and reviews
# ---------------------------------------------------------------------------


class TeamMember(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    role: Literal["admin", "editor", "viewer"]
    avatar: Optional[str] = None
    status: Literal["online", "offline", "invited"]


class BusinessProfile(BaseModel):
    """Identity record of a business that collects reviews."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    owner_name: str
    email: str
    whatsapp_number: str = Field(description="Messaging contact used only for escalations.")
    plan: Literal["basic", "pro"]
    platforms: frozenset[ReviewPlatform]
    team: tuple[TeamMember, ...] = ()
    logo: Optional[str] = None


class Review(BaseModel):
    id: str
    business_id: str
    reviewer_name: str
    rating: int = Field(..., ge=1, le=5)
    text: str
    visibility: Visibility
    platform: Optional[ReviewPlatform] = None
    created_at: datetime
    ai_draft: Optional[str] = None
    resolved: bool = False


class ReviewStats(BaseModel):
    """Aggregate numbers behind the analytics panel."""

    business_id: str
    total: int
    average_rating: float
    private_count: int
    distribution: dict[int, int]
    platform_counts: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Funnel persistence and routing
# ---------------------------------------------------------------------------


class SessionRecord(BaseModel):
    """Persisted shape of an in-progress funnel session."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    rating: int = Field(..., ge=0, le=5)
    comment: str
    timestamp: int = Field(..., description="Epoch milliseconds of the last write.")
    business_id: str = Field(..., alias="businessId")


class RoutingDecision(BaseModel):
    """Disposition of a submission; derived, never stored."""

    model_config = ConfigDict(frozen=True)

    is_private: bool
    target_url: Optional[str] = None
    escalation_eligible: bool

    @property
    def visibility(self) -> Visibility:
        return Visibility.PRIVATE if self.is_private else Visibility.PUBLIC


class Submission(BaseModel):
    """Payload handed to the submission backend."""

    model_config = ConfigDict(frozen=True)

    business_id: str
    rating: int
    comment: str
    destination: ReviewPlatform
    decision: RoutingDecision


class SubmissionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Funnel events
# ---------------------------------------------------------------------------


class AdvanceEvent(BaseModel):
    type: Literal["advance"] = "advance"


class ChooseRatingEvent(BaseModel):
    type: Literal["choose_rating"] = "choose_rating"
    rating: int


class EditCommentEvent(BaseModel):
    type: Literal["edit_comment"] = "edit_comment"
    comment: str


class BackEvent(BaseModel):
    type: Literal["back"] = "back"


class ConfirmEvent(BaseModel):
    type: Literal["confirm"] = "confirm"


class SelectDestinationEvent(BaseModel):
    type: Literal["select_destination"] = "select_destination"
    destination: ReviewPlatform


class SubmitEvent(BaseModel):
    type: Literal["submit"] = "submit"


class SubmissionCompletedEvent(BaseModel):
    type: Literal["submission_completed"] = "submission_completed"
    result: SubmissionResult


class EscalateEvent(BaseModel):
    type: Literal["escalate"] = "escalate"


class RestartEvent(BaseModel):
    type: Literal["restart"] = "restart"


ClientEvent = Annotated[
    Union[
        AdvanceEvent,
        ChooseRatingEvent,
        EditCommentEvent,
        BackEvent,
        ConfirmEvent,
        SelectDestinationEvent,
        SubmitEvent,
        EscalateEvent,
        RestartEvent,
    ],
    Field(discriminator="type"),
]

FunnelEvent = Union[
    AdvanceEvent,
    ChooseRatingEvent,
    EditCommentEvent,
    BackEvent,
    ConfirmEvent,
    SelectDestinationEvent,
    SubmitEvent,
    SubmissionCompletedEvent,
    EscalateEvent,
    RestartEvent,
]


class EventRequest(BaseModel):
    """Envelope for events posted by the funnel UI."""

    event: ClientEvent


class OutboundAction(BaseModel):
    """A fire-and-forget action the client opens in a new browsing context."""

    kind: Literal["redirect", "escalation"]
    url: str
    message: Optional[str] = None


class FunnelView(BaseModel):
    """Snapshot of a funnel session for rendering."""

    business_id: str
    business_name: str
    step: FunnelStep
    rating: int
    comment: str
    selected_destination: Optional[ReviewPlatform] = None
    submitting: bool
    can_confirm: bool
    can_submit: bool
    destinations: List[ReviewPlatform]
    privacy_notice: bool = Field(
        description="True when a low rating keeps feedback private whatever the destination."
    )
    escalation_available: bool
    decision: Optional[RoutingDecision] = None
    last_error: Optional[str] = None
    actions: List[OutboundAction] = Field(default_factory=list)


class LinkResolution(BaseModel):
    """Outcome of resolving an inbound review link."""

    view: Literal["client-flow", "dashboard", "error"]
    business: Optional[BusinessProfile] = None
    message: Optional[str] = None


class ShareLink(BaseModel):
    business_id: str
    public_link: str
    qr_image_url: str


# ---------------------------------------------------------------------------
# AI collaborator
# ---------------------------------------------------------------------------


class GroundingSource(BaseModel):
    title: str
    uri: str


class AIResult(BaseModel):
    """Tagged result of an AI call: ``ok`` or ``degraded`` with a reason."""

    status: Literal["ok", "degraded"]
    text: str
    reason: Optional[str] = None
    sources: List[GroundingSource] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == "ok"

    @classmethod
    def ok(cls, text: str, sources: List[GroundingSource] | None = None) -> "AIResult":
        return cls(status="ok", text=text, sources=sources or [])

    @classmethod
    def degraded(cls, text: str, reason: str) -> "AIResult":
        return cls(status="degraded", text=text, reason=reason)


class InsightResponse(BaseModel):
    """Wire shape of an AI panel result."""

    success: bool
    text: str
    sources: List[GroundingSource] = Field(default_factory=list)
    items: List[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: AIResult, *, split_lines: bool = False) -> "InsightResponse":
        items = [line.strip() for line in result.text.splitlines() if line.strip()] if split_lines else []
        return cls(success=result.success, text=result.text, sources=result.sources, items=items)


class DraftRequest(BaseModel):
    review_text: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    business_name: str = Field(..., min_length=1)
