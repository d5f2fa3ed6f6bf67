"""Review collection funnel: a pure reducer plus the controller that runs its effects."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Protocol, Tuple, Union

from .config import get_settings
from .memory import Clock, IdleExpiringMap, SessionStorage, SessionStore, epoch_ms, session_storage
from .reviews import ReviewInbox, review_inbox
from .routing import decide, destination_options, escalation_message, escalation_url
from .schemas import (
    AdvanceEvent,
    BackEvent,
    BusinessProfile,
    ChooseRatingEvent,
    ConfirmEvent,
    EditCommentEvent,
    EscalateEvent,
    FunnelEvent,
    FunnelStep,
    FunnelView,
    OutboundAction,
    RestartEvent,
    ReviewPlatform,
    RoutingDecision,
    SelectDestinationEvent,
    SessionRecord,
    Submission,
    SubmissionCompletedEvent,
    SubmissionResult,
    SubmitEvent,
)

MIN_COMMENT_LENGTH = 2

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State and effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FunnelState:
    """Everything the funnel knows about one in-progress submission."""

    business: BusinessProfile
    step: FunnelStep = FunnelStep.LANDING
    rating: int = 0
    comment: str = ""
    selected_destination: ReviewPlatform | None = None
    submitting: bool = False
    decision: RoutingDecision | None = None
    last_error: str | None = None

    @property
    def business_id(self) -> str:
        return self.business.id


@dataclass(frozen=True)
class PersistSession:
    business_id: str
    rating: int
    comment: str


@dataclass(frozen=True)
class DeleteSession:
    business_id: str


@dataclass(frozen=True)
class BeginSubmission:
    submission: Submission


@dataclass(frozen=True)
class RecordReview:
    submission: Submission


@dataclass(frozen=True)
class OpenRedirect:
    url: str


@dataclass(frozen=True)
class DispatchEscalation:
    url: str
    message: str


Effect = Union[PersistSession, DeleteSession, BeginSubmission, RecordReview, OpenRedirect, DispatchEscalation]


@dataclass(frozen=True)
class Transition:
    state: FunnelState
    effects: Tuple[Effect, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def can_confirm(state: FunnelState) -> bool:
    return (
        state.step is FunnelStep.FEEDBACK
        and not state.submitting
        and len(state.comment.strip()) >= MIN_COMMENT_LENGTH
    )


def can_submit(state: FunnelState) -> bool:
    return (
        state.step is FunnelStep.PLATFORM_SELECT
        and state.selected_destination is not None
        and state.rating > 0
        and not state.submitting
    )


def escalation_available(state: FunnelState) -> bool:
    return (
        state.step is FunnelStep.THANK_YOU
        and state.decision is not None
        and state.decision.escalation_eligible
    )


def _persist(state: FunnelState) -> Tuple[Effect, ...]:
    # Untouched sessions are never written.
    if state.rating > 0 or state.comment:
        return (PersistSession(state.business_id, state.rating, state.comment),)
    return ()


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------


def _on_advance(state: FunnelState, event: AdvanceEvent) -> Transition:
    if state.step is not FunnelStep.LANDING:
        return Transition(state)
    return Transition(replace(state, step=FunnelStep.RATING))


def _on_choose_rating(state: FunnelState, event: ChooseRatingEvent) -> Transition:
    if state.step is not FunnelStep.RATING or state.submitting or not 1 <= event.rating <= 5:
        return Transition(state)
    updated = replace(state, rating=event.rating, step=FunnelStep.FEEDBACK)
    return Transition(updated, _persist(updated))


def _on_edit_comment(state: FunnelState, event: EditCommentEvent) -> Transition:
    if state.step is not FunnelStep.FEEDBACK or state.submitting or event.comment == state.comment:
        return Transition(state)
    updated = replace(state, comment=event.comment)
    return Transition(updated, _persist(updated))


_BACK_TARGETS: Dict[FunnelStep, FunnelStep] = {
    FunnelStep.RATING: FunnelStep.LANDING,
    FunnelStep.FEEDBACK: FunnelStep.RATING,
    FunnelStep.PLATFORM_SELECT: FunnelStep.FEEDBACK,
}


def _on_back(state: FunnelState, event: BackEvent) -> Transition:
    target = _BACK_TARGETS.get(state.step)
    if target is None:
        return Transition(state)
    return Transition(replace(state, step=target))


def _on_confirm(state: FunnelState, event: ConfirmEvent) -> Transition:
    if not can_confirm(state):
        return Transition(state)
    return Transition(replace(state, step=FunnelStep.PLATFORM_SELECT))


def _on_select_destination(state: FunnelState, event: SelectDestinationEvent) -> Transition:
    if state.step is not FunnelStep.PLATFORM_SELECT or state.submitting:
        return Transition(state)
    if event.destination not in destination_options(state.business):
        return Transition(state)
    return Transition(replace(state, selected_destination=event.destination))


def _submission(state: FunnelState, decision: RoutingDecision) -> Submission:
    return Submission(
        business_id=state.business_id,
        rating=state.rating,
        comment=state.comment,
        destination=state.selected_destination,
        decision=decision,
    )


def _on_submit(state: FunnelState, event: SubmitEvent) -> Transition:
    if not can_submit(state):
        return Transition(state)
    decision = decide(state.rating, state.selected_destination, state.business.name)
    updated = replace(state, submitting=True, decision=decision, last_error=None)
    return Transition(updated, (BeginSubmission(_submission(state, decision)),))


def _on_submission_completed(state: FunnelState, event: SubmissionCompletedEvent) -> Transition:
    if not state.submitting:
        return Transition(state)
    if state.step is not FunnelStep.PLATFORM_SELECT:
        # The reviewer navigated away while the write was in flight.
        return Transition(replace(state, submitting=False, decision=None))
    if not event.result.ok:
        return Transition(
            replace(state, submitting=False, decision=None, last_error=event.result.reason or "Submission failed.")
        )

    # Only an accepted completion reaches the inbox.
    effects: List[Effect] = [RecordReview(_submission(state, state.decision))]
    if state.decision.target_url:
        effects.append(OpenRedirect(state.decision.target_url))
    effects.append(DeleteSession(state.business_id))
    return Transition(replace(state, submitting=False, step=FunnelStep.THANK_YOU), tuple(effects))


def _on_escalate(state: FunnelState, event: EscalateEvent) -> Transition:
    if not escalation_available(state):
        return Transition(state)
    message = escalation_message(state.business, state.rating, state.comment)
    return Transition(state, (DispatchEscalation(escalation_url(state.business, message), message),))


def _on_restart(state: FunnelState, event: RestartEvent) -> Transition:
    fresh = FunnelState(business=state.business)
    if state.step is FunnelStep.THANK_YOU:
        return Transition(fresh)
    return Transition(fresh, (DeleteSession(state.business_id),))


_HANDLERS: Dict[type, Callable[[FunnelState, FunnelEvent], Transition]] = {
    AdvanceEvent: _on_advance,
    ChooseRatingEvent: _on_choose_rating,
    EditCommentEvent: _on_edit_comment,
    BackEvent: _on_back,
    ConfirmEvent: _on_confirm,
    SelectDestinationEvent: _on_select_destination,
    SubmitEvent: _on_submit,
    SubmissionCompletedEvent: _on_submission_completed,
    EscalateEvent: _on_escalate,
    RestartEvent: _on_restart,
}


def reduce(state: FunnelState, event: FunnelEvent) -> Transition:
    """Apply *event* to *state*; events whose guard fails leave the state untouched."""

    handler = _HANDLERS[type(event)]
    return handler(state, event)


def recover(business: BusinessProfile, record: SessionRecord | None) -> FunnelState:
    """Rebuild the funnel from a persisted record, skipping completed steps."""

    state = FunnelState(business=business)
    if record is None:
        return state
    if record.rating > 0 and record.comment:
        step = FunnelStep.PLATFORM_SELECT
    elif record.rating > 0:
        step = FunnelStep.FEEDBACK
    else:
        step = FunnelStep.LANDING
    return replace(state, rating=record.rating, comment=record.comment, step=step)


# ---------------------------------------------------------------------------
# Submission backend
# ---------------------------------------------------------------------------


class Submitter(Protocol):
    async def submit(self, submission: Submission) -> SubmissionResult:
        ...


class SimulatedSubmitter:
    """Stand-in for a review backend: waits, then reports success."""

    def __init__(self, delay_seconds: float) -> None:
        self._delay_seconds = delay_seconds

    async def submit(self, submission: Submission) -> SubmissionResult:
        await asyncio.sleep(self._delay_seconds)
        return SubmissionResult(ok=True)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class FunnelController:
    """Own the state of one funnel instance and execute the effects it emits."""

    def __init__(
        self,
        business: BusinessProfile,
        store: SessionStore,
        submitter: Submitter,
        inbox: ReviewInbox | None = None,
    ) -> None:
        self.business = business
        self.state = FunnelState(business=business)
        self._store = store
        self._submitter = submitter
        self._inbox = inbox if inbox is not None else ReviewInbox()
        self._mounted = False

    def mount(self) -> FunnelState:
        """Run session recovery; only the first call reads the store."""

        if not self._mounted:
            self.state = recover(self.business, self._store.get(self.business.id))
            self._mounted = True
            logger.debug("Mounted funnel for %s at %s", self.business.id, self.state.step.value)
        return self.state

    async def dispatch(self, event: FunnelEvent) -> List[OutboundAction]:
        """Reduce *event* and run its effects; returns the client-side actions produced."""

        transition = reduce(self.state, event)
        self.state = transition.state
        actions: List[OutboundAction] = []
        for effect in transition.effects:
            actions.extend(await self._apply(effect))
        return actions

    async def _apply(self, effect: Effect) -> List[OutboundAction]:
        if isinstance(effect, PersistSession):
            record = SessionRecord(
                rating=effect.rating,
                comment=effect.comment,
                timestamp=self._store.now(),
                business_id=effect.business_id,
            )
            self._store.put(effect.business_id, record)
            return []
        if isinstance(effect, DeleteSession):
            self._store.delete(effect.business_id)
            return []
        if isinstance(effect, BeginSubmission):
            result = await self._submitter.submit(effect.submission)
            return await self.dispatch(SubmissionCompletedEvent(result=result))
        if isinstance(effect, RecordReview):
            submission = effect.submission
            review = self._inbox.record_submission(
                submission.business_id,
                submission.rating,
                submission.comment,
                submission.decision.visibility,
                submission.destination,
            )
            logger.info(
                "Recorded %s review %s for %s", submission.decision.visibility.value, review.id, submission.business_id
            )
            return []
        if isinstance(effect, OpenRedirect):
            logger.info("Redirecting reviewer of %s to %s", self.business.id, effect.url)
            return [OutboundAction(kind="redirect", url=effect.url)]
        if isinstance(effect, DispatchEscalation):
            logger.info("Escalation prepared for %s", self.business.id)
            return [OutboundAction(kind="escalation", url=effect.url, message=effect.message)]
        raise TypeError(f"Unsupported funnel effect: {effect!r}")

    def view(self, actions: List[OutboundAction] | None = None) -> FunnelView:
        state = self.state
        return FunnelView(
            business_id=state.business_id,
            business_name=state.business.name,
            step=state.step,
            rating=state.rating,
            comment=state.comment,
            selected_destination=state.selected_destination,
            submitting=state.submitting,
            can_confirm=can_confirm(state),
            can_submit=can_submit(state),
            destinations=destination_options(state.business),
            privacy_notice=state.step is FunnelStep.PLATFORM_SELECT and 0 < state.rating <= 3,
            escalation_available=escalation_available(state),
            decision=state.decision if state.step is FunnelStep.THANK_YOU else None,
            last_error=state.last_error,
            actions=actions or [],
        )


class FunnelRegistry:
    """Keep one live controller per (browsing session, business) pair.

    Controllers idle for longer than the session expiry are dropped, and the
    number kept alive is capped.
    """

    def __init__(
        self,
        storage: SessionStorage,
        inbox: ReviewInbox,
        *,
        clock: Clock = epoch_ms,
        idle_ms: int | None = None,
        max_entries: int | None = None,
    ) -> None:
        settings = get_settings()
        self._storage = storage
        self._inbox = inbox
        self._controllers = IdleExpiringMap(
            idle_ms if idle_ms is not None else settings.session_ttl_ms,
            max_entries if max_entries is not None else settings.max_browser_sessions,
            clock,
        )

    def controller(self, session_id: str, business: BusinessProfile) -> FunnelController:
        key = (session_id, business.id)
        controller = self._controllers.get(key)
        if controller is None:
            submitter = SimulatedSubmitter(get_settings().submit_delay_seconds)
            controller = FunnelController(business, self._storage.for_session(session_id), submitter, self._inbox)
            controller.mount()
            self._controllers.set(key, controller)
        return controller

    def mount(self, session_id: str, business: BusinessProfile) -> FunnelController:
        """Start a new funnel instance, as a page load does, recovering from the store."""

        self._controllers.pop((session_id, business.id))
        return self.controller(session_id, business)

    def clear(self) -> None:
        self._controllers.clear()

    def __len__(self) -> int:
        return len(self._controllers)


funnel_registry = FunnelRegistry(session_storage, review_inbox)
