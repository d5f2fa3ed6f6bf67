from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from review_funnel.funnel import (
    BeginSubmission,
    DeleteSession,
    FunnelController,
    FunnelRegistry,
    FunnelState,
    OpenRedirect,
    PersistSession,
    RecordReview,
    can_confirm,
    can_submit,
    recover,
    reduce,
)
from review_funnel.memory import SessionStorage, SessionStore
from review_funnel.reviews import ReviewInbox
from review_funnel.schemas import (
    AdvanceEvent,
    BackEvent,
    ChooseRatingEvent,
    ConfirmEvent,
    EditCommentEvent,
    EscalateEvent,
    FunnelStep,
    RestartEvent,
    ReviewPlatform,
    SelectDestinationEvent,
    SessionRecord,
    Submission,
    SubmissionCompletedEvent,
    SubmissionResult,
    SubmitEvent,
)
from review_funnel.tenants import BUSINESS_REGISTRY

MERLIN = BUSINESS_REGISTRY["merlin-cambridge-001"]
CRYSTAL = BUSINESS_REGISTRY["crystal-lounge-002"]
NOW_MS = 1_700_000_000_000


class RecordingSubmitter:
    def __init__(self, result: SubmissionResult | None = None) -> None:
        self.result = result or SubmissionResult(ok=True)
        self.submissions: list[Submission] = []

    async def submit(self, submission: Submission) -> SubmissionResult:
        self.submissions.append(submission)
        return self.result


class GatedSubmitter(RecordingSubmitter):
    """Holds each submission until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.gate: asyncio.Event | None = None

    async def submit(self, submission: Submission) -> SubmissionResult:
        self.submissions.append(submission)
        if self.gate is not None:
            await self.gate.wait()
        return self.result


def _store() -> SessionStore:
    return SessionStore(clock=lambda: NOW_MS, ttl_ms=30 * 60 * 1000)


def _at(step: FunnelStep, **changes) -> FunnelState:
    return replace(FunnelState(business=MERLIN), step=step, **changes)


def _drive(controller: FunnelController, *events):
    actions = []
    for event in events:
        actions.extend(asyncio.run(controller.dispatch(event)))
    return actions


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def test_happy_path_steps_in_order() -> None:
    state = FunnelState(business=MERLIN)
    assert state.step is FunnelStep.LANDING

    state = reduce(state, AdvanceEvent()).state
    assert state.step is FunnelStep.RATING

    transition = reduce(state, ChooseRatingEvent(rating=5))
    assert transition.state.step is FunnelStep.FEEDBACK
    assert transition.effects == (PersistSession(MERLIN.id, 5, ""),)

    transition = reduce(transition.state, EditCommentEvent(comment="Loved it"))
    assert transition.effects == (PersistSession(MERLIN.id, 5, "Loved it"),)

    state = reduce(transition.state, ConfirmEvent()).state
    assert state.step is FunnelStep.PLATFORM_SELECT


@pytest.mark.parametrize(
    ("step", "expected"),
    [
        (FunnelStep.RATING, FunnelStep.LANDING),
        (FunnelStep.FEEDBACK, FunnelStep.RATING),
        (FunnelStep.PLATFORM_SELECT, FunnelStep.FEEDBACK),
        (FunnelStep.LANDING, FunnelStep.LANDING),
        (FunnelStep.THANK_YOU, FunnelStep.THANK_YOU),
    ],
)
def test_back_navigation(step: FunnelStep, expected: FunnelStep) -> None:
    transition = reduce(_at(step, rating=4, comment="Nice"), BackEvent())

    assert transition.state.step is expected
    assert transition.effects == ()


@pytest.mark.parametrize("rating", [0, 6, -1])
def test_out_of_range_rating_is_ignored(rating: int) -> None:
    state = _at(FunnelStep.RATING)

    transition = reduce(state, ChooseRatingEvent(rating=rating))

    assert transition.state == state
    assert transition.effects == ()


@pytest.mark.parametrize("comment", ["", "a", " b ", "   "])
def test_confirm_stays_disabled_for_short_comments(comment: str) -> None:
    state = _at(FunnelStep.FEEDBACK, rating=4, comment=comment)

    assert not can_confirm(state)
    assert reduce(state, ConfirmEvent()).state.step is FunnelStep.FEEDBACK


def test_clearing_comment_without_rating_writes_nothing() -> None:
    state = _at(FunnelStep.FEEDBACK, comment="x")

    transition = reduce(state, EditCommentEvent(comment=""))

    assert transition.state.comment == ""
    assert transition.effects == ()


def test_submit_requires_a_destination() -> None:
    state = _at(FunnelStep.PLATFORM_SELECT, rating=5, comment="Loved it")

    assert not can_submit(state)
    assert reduce(state, SubmitEvent()).state == state


def test_destination_must_be_offered_by_the_business() -> None:
    state = _at(FunnelStep.PLATFORM_SELECT, rating=5, comment="Loved it")

    transition = reduce(state, SelectDestinationEvent(destination=ReviewPlatform.YELP))

    assert transition.state.selected_destination is None


def test_submit_sets_reentrancy_guard() -> None:
    state = _at(
        FunnelStep.PLATFORM_SELECT, rating=5, comment="Loved it", selected_destination=ReviewPlatform.GOOGLE
    )

    transition = reduce(state, SubmitEvent())

    assert transition.state.submitting
    assert isinstance(transition.effects[0], BeginSubmission)
    assert not can_submit(transition.state)
    assert reduce(transition.state, SubmitEvent()).effects == ()


def test_successful_submission_redirects_then_deletes_session() -> None:
    state = _at(
        FunnelStep.PLATFORM_SELECT, rating=5, comment="Loved it", selected_destination=ReviewPlatform.GOOGLE
    )
    submitted = reduce(state, SubmitEvent()).state

    transition = reduce(submitted, SubmissionCompletedEvent(result=SubmissionResult(ok=True)))

    assert transition.state.step is FunnelStep.THANK_YOU
    assert not transition.state.submitting
    record, redirect, delete = transition.effects
    assert isinstance(record, RecordReview) and record.submission.comment == "Loved it"
    assert isinstance(redirect, OpenRedirect) and "Merlin%20Cambridge" in redirect.url
    assert delete == DeleteSession(MERLIN.id)


def test_failed_submission_keeps_reviewer_on_platform_select() -> None:
    state = _at(
        FunnelStep.PLATFORM_SELECT, rating=5, comment="Loved it", selected_destination=ReviewPlatform.GOOGLE
    )
    submitted = reduce(state, SubmitEvent()).state

    transition = reduce(submitted, SubmissionCompletedEvent(result=SubmissionResult(ok=False, reason="offline")))

    assert transition.state.step is FunnelStep.PLATFORM_SELECT
    assert transition.state.last_error == "offline"
    assert transition.effects == ()
    assert can_submit(transition.state)


def test_completion_after_navigating_away_is_discarded() -> None:
    state = _at(
        FunnelStep.PLATFORM_SELECT, rating=5, comment="Loved it", selected_destination=ReviewPlatform.GOOGLE
    )
    submitted = reduce(state, SubmitEvent()).state
    moved = reduce(submitted, BackEvent()).state

    transition = reduce(moved, SubmissionCompletedEvent(result=SubmissionResult(ok=True)))

    assert transition.state.step is FunnelStep.FEEDBACK
    assert not transition.state.submitting
    assert transition.effects == ()


def test_restart_mid_flow_discards_stored_session() -> None:
    transition = reduce(_at(FunnelStep.FEEDBACK, rating=3, comment="Meh"), RestartEvent())

    assert transition.state == FunnelState(business=MERLIN)
    assert transition.effects == (DeleteSession(MERLIN.id),)


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("rating", "comment", "expected"),
    [
        (4, "", FunnelStep.FEEDBACK),
        (5, "Great!", FunnelStep.PLATFORM_SELECT),
        (0, "", FunnelStep.LANDING),
    ],
)
def test_recover_resumes_at_implied_step(rating: int, comment: str, expected: FunnelStep) -> None:
    record = SessionRecord(rating=rating, comment=comment, timestamp=NOW_MS, business_id=MERLIN.id)

    state = recover(MERLIN, record)

    assert state.step is expected
    assert state.rating == rating
    assert state.comment == comment


def test_fresh_mount_resumes_from_store() -> None:
    store = _store()
    first = FunnelController(MERLIN, store, RecordingSubmitter())
    first.mount()
    _drive(first, AdvanceEvent(), ChooseRatingEvent(rating=4))

    second = FunnelController(MERLIN, store, RecordingSubmitter())

    assert second.mount().step is FunnelStep.FEEDBACK
    assert second.state.rating == 4


def test_fresh_mount_with_comment_resumes_at_platform_select() -> None:
    store = _store()
    first = FunnelController(MERLIN, store, RecordingSubmitter())
    first.mount()
    _drive(first, AdvanceEvent(), ChooseRatingEvent(rating=5), EditCommentEvent(comment="Great!"))

    second = FunnelController(MERLIN, store, RecordingSubmitter())

    assert second.mount().step is FunnelStep.PLATFORM_SELECT
    assert second.state.comment == "Great!"


def test_mount_with_expired_session_starts_at_landing() -> None:
    store = _store()
    store.put(
        MERLIN.id,
        SessionRecord(rating=5, comment="Great!", timestamp=NOW_MS - 31 * 60 * 1000, business_id=MERLIN.id),
    )

    assert FunnelController(MERLIN, store, RecordingSubmitter()).mount().step is FunnelStep.LANDING


def test_recovery_runs_only_once() -> None:
    store = _store()
    controller = FunnelController(MERLIN, store, RecordingSubmitter())
    controller.mount()
    store.put(MERLIN.id, SessionRecord(rating=5, comment="Later", timestamp=NOW_MS, business_id=MERLIN.id))

    assert controller.mount().step is FunnelStep.LANDING


def test_untouched_funnel_never_writes_the_store() -> None:
    store = _store()
    controller = FunnelController(MERLIN, store, RecordingSubmitter())
    controller.mount()
    _drive(controller, AdvanceEvent(), BackEvent())

    assert store.get(MERLIN.id) is None


# ---------------------------------------------------------------------------
# End-to-end scenarios through the controller
# ---------------------------------------------------------------------------


def _complete_flow(controller: FunnelController, rating: int, comment: str, destination: ReviewPlatform):
    controller.mount()
    return _drive(
        controller,
        AdvanceEvent(),
        ChooseRatingEvent(rating=rating),
        EditCommentEvent(comment=comment),
        ConfirmEvent(),
        SelectDestinationEvent(destination=destination),
        SubmitEvent(),
    )


def test_low_rating_on_google_is_kept_private() -> None:
    store = _store()
    submitter = RecordingSubmitter()
    controller = FunnelController(MERLIN, store, submitter)

    actions = _complete_flow(controller, 2, "Too slow", ReviewPlatform.GOOGLE)

    assert controller.state.step is FunnelStep.THANK_YOU
    assert controller.state.decision.is_private
    assert actions == []
    assert submitter.submissions[0].decision.is_private
    assert controller.view().escalation_available
    assert store.get(MERLIN.id) is None

    escalation = _drive(controller, EscalateEvent())
    assert [action.kind for action in escalation] == ["escalation"]
    assert escalation[0].url.startswith(f"https://wa.me/{MERLIN.whatsapp_number}")
    assert "Too slow" in escalation[0].message


def test_high_rating_on_google_redirects_publicly() -> None:
    store = _store()
    controller = FunnelController(MERLIN, store, RecordingSubmitter())

    actions = _complete_flow(controller, 5, "Loved it", ReviewPlatform.GOOGLE)

    assert controller.state.step is FunnelStep.THANK_YOU
    assert not controller.state.decision.is_private
    assert [action.kind for action in actions] == ["redirect"]
    assert "Merlin%20Cambridge" in actions[0].url
    assert not controller.view().escalation_available
    assert _drive(controller, EscalateEvent()) == []
    assert store.get(MERLIN.id) is None


def test_public_platform_without_template_still_thanks_the_reviewer() -> None:
    controller = FunnelController(CRYSTAL, _store(), RecordingSubmitter())

    actions = _complete_flow(controller, 5, "Lovely cocktails", ReviewPlatform.YELP)

    assert controller.state.step is FunnelStep.THANK_YOU
    assert actions == []


def test_failed_submission_keeps_the_stored_session() -> None:
    store = _store()
    controller = FunnelController(MERLIN, store, RecordingSubmitter(SubmissionResult(ok=False, reason="down")))

    _complete_flow(controller, 5, "Loved it", ReviewPlatform.GOOGLE)

    assert controller.state.step is FunnelStep.PLATFORM_SELECT
    assert controller.view().last_error == "down"
    assert store.get(MERLIN.id) is not None


def test_privacy_notice_shown_for_low_ratings() -> None:
    controller = FunnelController(MERLIN, _store(), RecordingSubmitter())
    controller.mount()
    _drive(controller, AdvanceEvent(), ChooseRatingEvent(rating=3), EditCommentEvent(comment="Okay"), ConfirmEvent())

    view = controller.view()

    assert view.step is FunnelStep.PLATFORM_SELECT
    assert view.privacy_notice
    assert view.destinations[0] is ReviewPlatform.INTERNAL_ONLY


def test_completed_submission_is_recorded_in_the_inbox() -> None:
    inbox = ReviewInbox()
    controller = FunnelController(MERLIN, _store(), RecordingSubmitter(), inbox)

    _complete_flow(controller, 2, "Too slow", ReviewPlatform.GOOGLE)

    reviews = inbox.list_for_business(MERLIN.id)
    assert [(review.rating, review.text, review.visibility.value) for review in reviews] == [
        (2, "Too slow", "private")
    ]


def test_failed_submission_is_not_recorded() -> None:
    inbox = ReviewInbox()
    controller = FunnelController(MERLIN, _store(), RecordingSubmitter(SubmissionResult(ok=False)), inbox)

    _complete_flow(controller, 5, "Loved it", ReviewPlatform.GOOGLE)

    assert inbox.list_for_business(MERLIN.id) == []


def test_going_back_during_submission_then_resubmitting_records_one_review() -> None:
    inbox = ReviewInbox()
    store = _store()
    submitter = GatedSubmitter()
    controller = FunnelController(MERLIN, store, submitter, inbox)

    async def scenario():
        submitter.gate = asyncio.Event()
        controller.mount()
        for event in (
            AdvanceEvent(),
            ChooseRatingEvent(rating=5),
            EditCommentEvent(comment="Loved it"),
            ConfirmEvent(),
            SelectDestinationEvent(destination=ReviewPlatform.GOOGLE),
        ):
            await controller.dispatch(event)

        pending = asyncio.create_task(controller.dispatch(SubmitEvent()))
        await asyncio.sleep(0)
        await controller.dispatch(BackEvent())
        submitter.gate.set()
        discarded = await pending

        assert discarded == []
        assert controller.state.step is FunnelStep.FEEDBACK
        assert inbox.list_for_business(MERLIN.id) == []
        assert store.get(MERLIN.id) is not None

        submitter.gate = None
        await controller.dispatch(ConfirmEvent())
        return await controller.dispatch(SubmitEvent())

    actions = asyncio.run(scenario())

    assert controller.state.step is FunnelStep.THANK_YOU
    assert [action.kind for action in actions] == ["redirect"]
    assert len(submitter.submissions) == 2
    assert len(inbox.list_for_business(MERLIN.id)) == 1


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def _registry(clock, **limits) -> FunnelRegistry:
    storage = SessionStorage(clock=clock, idle_ms=30 * 60 * 1000, max_sessions=100)
    return FunnelRegistry(storage, ReviewInbox(), clock=clock, **limits)


def test_registry_mount_recovers_from_the_store() -> None:
    registry = _registry(lambda: NOW_MS)
    live = registry.controller("browser", MERLIN)
    _drive(live, AdvanceEvent(), ChooseRatingEvent(rating=5), EditCommentEvent(comment="Great!"), BackEvent())
    assert live.state.step is FunnelStep.RATING

    reloaded = registry.mount("browser", MERLIN)

    assert reloaded is not live
    assert reloaded.state.step is FunnelStep.PLATFORM_SELECT
    assert registry.controller("browser", MERLIN) is reloaded


def test_registry_caps_live_controllers() -> None:
    registry = _registry(lambda: NOW_MS, max_entries=2)
    first = registry.controller("a", MERLIN)
    registry.controller("b", MERLIN)
    registry.controller("a", MERLIN)

    registry.controller("c", MERLIN)

    assert len(registry) == 2
    assert registry.controller("a", MERLIN) is first


def test_registry_drops_idle_controllers() -> None:
    now = [NOW_MS]
    registry = _registry(lambda: now[0], idle_ms=30 * 60 * 1000)
    first = registry.controller("a", MERLIN)

    now[0] += 30 * 60 * 1000
    registry.controller("b", MERLIN)

    assert len(registry) == 1
    assert registry.controller("a", MERLIN) is not first
