from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from app.models.funding import Currency, FundingApplication, FundingStatus, RoundType
from app.models.mentorship import (
    CandidateStatus,
    RequestStatus,
    Session,
    SessionStatus,
    Urgency,
)
from app.models.notification import NotificationPriority, NotificationType
from app.models.startup import StartupKpis, StartupStatus
from app.models.workflow import (
    FeedbackInput,
    FundingApplicationDraft,
    MentorshipRequestDraft,
    NotificationSpec,
    SessionSpec,
    StartupStatusUpdate,
)
from app.services.store.errors import (
    ConflictError,
    InvariantViolation,
    NotFound,
    StoreError,
    TransientError,
)
from app.services.store.memory import InMemoryEntityStore
from app.services.workflows import service as workflow_module
from tests.helpers.faults import FaultInjectingStore
from tests.helpers.metrics_stub import StubMetrics
from tests.helpers.seed import (
    FIXED_NOW,
    load,
    make_mentor,
    make_request,
    make_startup,
    notifications_for,
    seed,
)
from tests.helpers.services import RecordingSink, build_service

SCHEDULED_AT = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


def _faulty(*entities):
    inner = InMemoryEntityStore()
    seed(inner, *entities)
    faulty = FaultInjectingStore(inner)
    sink = RecordingSink()
    return faulty, build_service(faulty, sink=sink), sink


def _scheduled_request(request_id="r1", mentor_id="m1", session_id="sess-1"):
    return make_request(
        "s1",
        id=request_id,
        status=RequestStatus.SCHEDULED,
        selected_mentor_id=mentor_id,
        sessions=[Session(id=session_id, mentor_id=mentor_id, scheduled_at=SCHEDULED_AT)],
    )


# --- assign_mentor_and_create_session -------------------------------------------------


def test_assign_schedules_session_and_consumes_slot(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1", slots_available=2), make_request("s1", id="r1"))

    result = service.assign_mentor_and_create_session(
        "r1", "m1", SessionSpec(scheduled_at=SCHEDULED_AT, meeting_link="https://meet.example/abc")
    )

    assert result.request.status == RequestStatus.SCHEDULED
    assert result.request.selected_mentor_id == "m1"
    assert len(result.request.sessions) == 1
    session = result.request.sessions[0]
    assert session.duration_minutes == 60
    assert session.status == SessionStatus.SCHEDULED
    assert result.mentor.slots_available == 1
    assert load(store, "mentors", "m1").slots_available == 1
    assert load(store, "requests", "r1").sessions[0].id == session.id


def test_assign_replay_does_not_consume_another_slot(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1", slots_available=1), make_request("s1", id="r1"))
    spec = SessionSpec(scheduled_at=SCHEDULED_AT)

    service.assign_mentor_and_create_session("r1", "m1", spec)
    replay = service.assign_mentor_and_create_session("r1", "m1", spec)

    assert len(replay.request.sessions) == 1
    assert load(store, "mentors", "m1").slots_available == 0


def test_assign_accepts_naive_times_as_utc(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1"), make_request("s1", id="r1"))

    result = service.assign_mentor_and_create_session(
        "r1", "m1", SessionSpec(scheduled_at=datetime(2026, 3, 10, 15, 0))
    )

    assert result.request.sessions[0].scheduled_at == SCHEDULED_AT


def test_assign_without_slots_fails_and_leaves_request_pending(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1", slots_available=0), make_request("s1", id="r1"))

    with pytest.raises(InvariantViolation) as excinfo:
        service.assign_mentor_and_create_session("r1", "m1", SessionSpec(scheduled_at=SCHEDULED_AT))

    assert excinfo.value.code == "NO_SLOTS_AVAILABLE"
    request = load(store, "requests", "r1")
    assert request.status == RequestStatus.PENDING
    assert request.sessions == []


def test_assign_rejects_a_second_mentor(service, store):
    seed(
        store,
        make_startup(id="s1"),
        make_mentor("m1"),
        make_mentor("m2"),
        make_request("s1", id="r1", status=RequestStatus.MATCHED, selected_mentor_id="m1"),
    )

    with pytest.raises(InvariantViolation) as excinfo:
        service.assign_mentor_and_create_session("r1", "m2", SessionSpec(scheduled_at=SCHEDULED_AT))

    assert excinfo.value.code == "MENTOR_ALREADY_SELECTED"
    assert load(store, "mentors", "m2").slots_available == 3


def test_assign_unknown_mentor_is_not_found(service, store):
    seed(store, make_startup(id="s1"), make_request("s1", id="r1"))

    with pytest.raises(NotFound):
        service.assign_mentor_and_create_session("r1", "ghost", SessionSpec(scheduled_at=SCHEDULED_AT))


def test_assign_is_atomic_when_slot_write_fails():
    faulty, service, _ = _faulty(
        make_startup(id="s1"), make_mentor("m1", slots_available=1), make_request("s1", id="r1")
    )
    faulty.fail_on("mentors.decrement_slots", StoreError("disk full"))

    with pytest.raises(StoreError):
        service.assign_mentor_and_create_session("r1", "m1", SessionSpec(scheduled_at=SCHEDULED_AT))

    request = load(faulty.inner, "requests", "r1")
    assert request.status == RequestStatus.PENDING
    assert request.selected_mentor_id is None
    assert request.sessions == []
    assert load(faulty.inner, "mentors", "m1").slots_available == 1


def test_concurrent_assignments_for_the_last_slot():
    faulty, service, _ = _faulty(
        make_startup(id="s1"),
        make_mentor("m1", slots_available=1),
        make_request("s1", id="r1"),
        make_request("s1", id="r2"),
    )
    service = build_service(faulty, max_attempts=10, base_delay=0.01)
    barrier = threading.Barrier(2, timeout=5)
    first_attempts: set[int] = set()
    guard = threading.Lock()

    def hold_until_both_read_the_mentor() -> None:
        ident = threading.get_ident()
        with guard:
            if ident in first_attempts:
                return
            first_attempts.add(ident)
        barrier.wait()

    faulty.after("mentors.get", hold_until_both_read_the_mentor)
    outcomes: dict[str, object] = {}

    def assign(request_id: str) -> None:
        try:
            outcomes[request_id] = service.assign_mentor_and_create_session(
                request_id, "m1", SessionSpec(scheduled_at=SCHEDULED_AT)
            )
        except InvariantViolation as exc:
            outcomes[request_id] = exc

    threads = [threading.Thread(target=assign, args=(request_id,)) for request_id in ("r1", "r2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    failures = [value for value in outcomes.values() if isinstance(value, InvariantViolation)]
    successes = [value for value in outcomes.values() if not isinstance(value, InvariantViolation)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].code == "NO_SLOTS_AVAILABLE"
    assert load(faulty.inner, "mentors", "m1").slots_available == 0
    scheduled = [
        load(faulty.inner, "requests", request_id).status for request_id in ("r1", "r2")
    ]
    assert sorted(status.value for status in scheduled) == ["Pending", "Scheduled"]


# --- update_startup_status_with_notification ---------------------------------------


def test_status_update_writes_history_and_notifies_founder(service, store, sink):
    seed(store, make_startup(id="s1", status=StartupStatus.PENDING))

    result = service.update_startup_status_with_notification(
        "s1", StartupStatus.APPROVED, changed_by="admin-1", reason="Strong cohort fit"
    )

    assert result.startup.status == StartupStatus.APPROVED
    change = result.startup.status_history[-1]
    assert (change.status, change.changed_by, change.reason) == (
        StartupStatus.APPROVED,
        "admin-1",
        "Strong cohort fit",
    )
    notification = result.notification
    assert notification.recipient_id == "founder-1"
    assert notification.title == "Startup Status Updated"
    assert notification.metadata == {"previous_status": "Pending", "new_status": "Approved"}
    assert notification.created_at == FIXED_NOW
    assert [n.id for n in notifications_for(store, "founder-1")] == [notification.id]
    assert [n.id for n in sink.delivered] == [notification.id]


def test_status_update_uses_custom_notification(service, store):
    seed(store, make_startup(id="s1", status=StartupStatus.ACTIVE))
    spec = NotificationSpec(
        title="Congratulations",
        message="You graduated from the program.",
        priority=NotificationPriority.HIGH,
    )

    result = service.update_startup_status_with_notification("s1", StartupStatus.GRADUATED, spec)

    assert result.notification.title == "Congratulations"
    assert result.notification.priority == NotificationPriority.HIGH
    assert result.notification.type == NotificationType.STARTUP_STATUS_CHANGED


def test_status_replay_is_a_no_op(service, store, sink):
    seed(store, make_startup(id="s1", status=StartupStatus.PENDING))
    service.update_startup_status_with_notification("s1", StartupStatus.APPROVED)

    replay = service.update_startup_status_with_notification("s1", StartupStatus.APPROVED)

    assert replay.notification is None
    assert len(replay.startup.status_history) == 1
    assert len(notifications_for(store, "founder-1")) == 1
    assert len(sink.batches) == 1


def test_status_update_rejects_backwards_transition(service, store):
    seed(store, make_startup(id="s1", status=StartupStatus.GRADUATED))

    with pytest.raises(InvariantViolation) as excinfo:
        service.update_startup_status_with_notification("s1", StartupStatus.ACTIVE)

    assert excinfo.value.code == "INVALID_TRANSITION"
    assert notifications_for(store, "founder-1") == []


def test_status_update_admin_override(service, store):
    seed(store, make_startup(id="s1", status=StartupStatus.GRADUATED))

    result = service.update_startup_status_with_notification(
        "s1", StartupStatus.ACTIVE, admin_override=True
    )

    assert result.startup.status == StartupStatus.ACTIVE


def test_status_update_unknown_startup(service):
    with pytest.raises(NotFound):
        service.update_startup_status_with_notification("missing", StartupStatus.APPROVED)


def test_status_update_is_atomic_when_notification_write_fails():
    faulty, service, sink = _faulty(make_startup(id="s1", status=StartupStatus.PENDING))
    faulty.fail_on("notifications.insert", StoreError("write failed"))

    with pytest.raises(StoreError):
        service.update_startup_status_with_notification("s1", StartupStatus.APPROVED)

    startup = load(faulty.inner, "startups", "s1")
    assert startup.status == StartupStatus.PENDING
    assert startup.status_history == []
    assert sink.delivered == []


def test_status_update_retries_transient_failures():
    faulty, service, sink = _faulty(make_startup(id="s1", status=StartupStatus.PENDING))
    faulty.fail_on("notifications.insert", TransientError("connection reset"), times=2)

    result = service.update_startup_status_with_notification("s1", StartupStatus.APPROVED)

    assert faulty.begun == 3
    assert load(faulty.inner, "startups", "s1").status == StartupStatus.APPROVED
    assert len(notifications_for(faulty.inner, "founder-1")) == 1
    assert [n.id for n in sink.delivered] == [result.notification.id]


# --- submit_funding_application ----------------------------------------------------


def test_funding_submission_adds_amount_exactly(service, store):
    seed(store, make_startup(id="s1", kpis=StartupKpis(funding=100_000)))

    result = service.submit_funding_application(
        FundingApplicationDraft(amount_requested=250_000, round_type=RoundType.SEED), "s1"
    )

    assert result.application.status == FundingStatus.SUBMITTED
    assert result.application.submitted_at == FIXED_NOW
    assert result.application.startup_id == "s1"
    assert result.startup.kpis.funding == 350_000
    assert load(store, "startups", "s1").kpis.funding == 350_000
    assert load(store, "funding_applications", result.application.id) is not None


def test_funding_submission_with_idempotency_key_counts_once(service, store):
    seed(store, make_startup(id="s1"))
    draft = FundingApplicationDraft(id="app-1", amount_requested=50_000)

    first = service.submit_funding_application(draft, "s1")
    second = service.submit_funding_application(draft, "s1")

    assert second.application.id == first.application.id
    assert load(store, "startups", "s1").kpis.funding == 50_000


def test_funding_idempotency_key_from_another_startup_conflicts(service, store):
    seed(store, make_startup(id="s1"), make_startup(id="s2", founder_id="founder-2"))
    service.submit_funding_application(FundingApplicationDraft(id="app-1", amount_requested=10), "s1")

    with pytest.raises(ConflictError) as excinfo:
        service.submit_funding_application(
            FundingApplicationDraft(id="app-1", amount_requested=10), "s2"
        )

    assert excinfo.value.code == "IDEMPOTENCY_KEY_REUSED"
    assert load(store, "startups", "s2").kpis.funding == 0


def test_funding_for_unknown_startup_leaves_no_application(service, store):
    with pytest.raises(NotFound):
        service.submit_funding_application(
            FundingApplicationDraft(id="app-orphan", amount_requested=10), "missing"
        )

    assert load(store, "funding_applications", "app-orphan") is None


def test_funding_is_atomic_when_increment_fails():
    faulty, service, _ = _faulty(make_startup(id="s1"))
    faulty.fail_on("startups.increment_funding", StoreError("write failed"))

    with pytest.raises(StoreError):
        service.submit_funding_application(
            FundingApplicationDraft(id="app-1", amount_requested=10), "s1"
        )

    assert load(faulty.inner, "funding_applications", "app-1") is None
    assert load(faulty.inner, "startups", "s1").kpis.funding == 0


def _drop_first_commit_acknowledgement(faulty):
    """Commit for real, then report a lost connection to the caller once."""
    state = {"dropped": False}

    def drop() -> None:
        if not state["dropped"]:
            state["dropped"] = True
            raise TransientError("connection lost after COMMIT")

    faulty.after("commit", drop)


def test_funding_retried_after_lost_commit_counts_once():
    faulty, service, _ = _faulty(make_startup(id="s1"))
    _drop_first_commit_acknowledgement(faulty)

    result = service.submit_funding_application(FundingApplicationDraft(amount_requested=100), "s1")

    assert faulty.begun == 2
    assert result.startup.kpis.funding == 100
    assert load(faulty.inner, "startups", "s1").kpis.funding == 100
    assert load(faulty.inner, "funding_applications", result.application.id) is not None


def test_funding_key_reused_with_different_amount_conflicts(service, store):
    seed(store, make_startup(id="s1"))
    service.submit_funding_application(FundingApplicationDraft(id="a1", amount_requested=50), "s1")

    with pytest.raises(ConflictError) as excinfo:
        service.submit_funding_application(
            FundingApplicationDraft(id="a1", amount_requested=999), "s1"
        )

    assert excinfo.value.code == "IDEMPOTENCY_KEY_REUSED"
    assert load(store, "funding_applications", "a1").amount_requested == 50
    assert load(store, "startups", "s1").kpis.funding == 50


@pytest.mark.parametrize(
    "changes",
    [{"round_type": RoundType.SERIES_A}, {"currency": Currency.EUR}, {"applicant_id": "other"}],
)
def test_funding_key_reused_with_different_terms_conflicts(service, store, changes):
    seed(store, make_startup(id="s1"))
    original = FundingApplicationDraft(id="a1", amount_requested=50, applicant_id="founder-1")
    service.submit_funding_application(original, "s1")

    with pytest.raises(ConflictError):
        service.submit_funding_application(original.model_copy(update=changes), "s1")

    assert load(store, "startups", "s1").kpis.funding == 50


def test_submitting_a_draft_flips_status_and_counts_funding(service, store):
    seed(
        store,
        make_startup(id="s1"),
        FundingApplication(id="a1", startup_id="s1", amount_requested=50, purpose="Hiring"),
    )

    result = service.submit_funding_application(
        FundingApplicationDraft(id="a1", amount_requested=50), "s1"
    )
    replay = service.submit_funding_application(
        FundingApplicationDraft(id="a1", amount_requested=50), "s1"
    )

    assert result.application.status == FundingStatus.SUBMITTED
    assert result.application.submitted_at == FIXED_NOW
    assert result.application.purpose == "Hiring"
    assert result.startup.kpis.funding == 50
    assert replay.application.status == FundingStatus.SUBMITTED
    assert load(store, "startups", "s1").kpis.funding == 50


def test_submitting_a_draft_of_another_startup_conflicts(service, store):
    seed(
        store,
        make_startup(id="s1"),
        make_startup(id="s2", founder_id="founder-2"),
        FundingApplication(id="a1", startup_id="s1", amount_requested=50),
    )

    with pytest.raises(ConflictError):
        service.submit_funding_application(
            FundingApplicationDraft(id="a1", amount_requested=50), "s2"
        )

    assert load(store, "funding_applications", "a1").status == FundingStatus.DRAFT
    assert load(store, "startups", "s2").kpis.funding == 0


def test_withdrawing_keeps_cumulative_funding(service, store):
    seed(store, make_startup(id="s1"))
    service.submit_funding_application(FundingApplicationDraft(id="a1", amount_requested=80), "s1")

    withdrawn = service.withdraw_funding_application("a1", reason="Closed the round elsewhere")
    again = service.withdraw_funding_application("a1")

    assert withdrawn.status == FundingStatus.WITHDRAWN
    assert withdrawn.withdrawn_at == FIXED_NOW
    assert again.withdrawal_reason == "Closed the round elsewhere"
    assert load(store, "startups", "s1").kpis.funding == 80
    with pytest.raises(InvariantViolation) as excinfo:
        service.submit_funding_application(
            FundingApplicationDraft(id="a1", amount_requested=80), "s1"
        )
    assert excinfo.value.code == "APPLICATION_WITHDRAWN"


def test_withdrawing_a_draft_uses_the_default_reason(service, store):
    seed(
        store,
        make_startup(id="s1"),
        FundingApplication(id="a1", startup_id="s1", amount_requested=50),
    )

    withdrawn = service.withdraw_funding_application("a1")

    assert withdrawn.withdrawal_reason == "No reason provided"
    assert load(store, "startups", "s1").kpis.funding == 0


@pytest.mark.parametrize("status", [FundingStatus.APPROVED, FundingStatus.REJECTED])
def test_decided_applications_cannot_be_withdrawn(service, store, status):
    seed(
        store,
        FundingApplication(
            id="a1", startup_id="s1", amount_requested=50, status=status, submitted_at=FIXED_NOW
        ),
    )

    with pytest.raises(InvariantViolation) as excinfo:
        service.withdraw_funding_application("a1")

    assert excinfo.value.code == "APPLICATION_CLOSED"
    assert load(store, "funding_applications", "a1").status == status


def test_withdrawing_unknown_application_is_not_found(service):
    with pytest.raises(NotFound):
        service.withdraw_funding_application("missing")


# --- complete_session_with_feedback ------------------------------------------------


def test_feedback_completes_session_and_recomputes_rating(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1"), _scheduled_request())

    result = service.complete_session_with_feedback(
        "r1", "sess-1", FeedbackInput(rating=4, comment="Sharp advice"), FeedbackInput(rating=5)
    )

    session = result.request.find_session("sess-1")
    assert session.status == SessionStatus.COMPLETED
    assert session.founder_feedback.rating == 4
    assert session.founder_feedback.submitted_at == FIXED_NOW
    assert session.mentor_feedback.rating == 5
    assert result.mentor.rating == 4.0
    assert result.mentor.total_ratings == 1
    assert result.mentor.sessions_completed == 1


def test_feedback_replay_does_not_double_count(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1"), _scheduled_request())
    service.complete_session_with_feedback("r1", "sess-1", FeedbackInput(rating=4))

    replay = service.complete_session_with_feedback("r1", "sess-1", FeedbackInput(rating=4))

    assert replay.mentor.rating == 4.0
    assert replay.mentor.total_ratings == 1
    assert load(store, "mentors", "m1").total_ratings == 1


def test_rating_is_the_mean_over_every_request(service, store):
    seed(
        store,
        make_startup(id="s1"),
        make_mentor("m1"),
        _scheduled_request("r1", session_id="sess-1"),
        _scheduled_request("r2", session_id="sess-2"),
    )
    service.complete_session_with_feedback("r1", "sess-1", FeedbackInput(rating=5))

    result = service.complete_session_with_feedback("r2", "sess-2", FeedbackInput(rating=2))

    assert result.mentor.rating == 3.5
    assert result.mentor.total_ratings == 2
    assert result.mentor.sessions_completed == 2


def test_rating_keeps_the_exact_mean(service, store):
    request = make_request(
        "s1",
        id="r1",
        status=RequestStatus.SCHEDULED,
        selected_mentor_id="m1",
        sessions=[
            Session(id=session_id, mentor_id="m1", scheduled_at=SCHEDULED_AT)
            for session_id in ("a", "b", "c")
        ],
    )
    seed(store, make_startup(id="s1"), make_mentor("m1"), request)

    for session_id, rating in (("a", 5), ("b", 4), ("c", 4)):
        result = service.complete_session_with_feedback(
            "r1", session_id, FeedbackInput(rating=rating)
        )

    assert result.mentor.rating == 13 / 3
    assert load(store, "mentors", "m1").rating == 13 / 3


def test_feedback_on_unknown_session(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1"), _scheduled_request())

    with pytest.raises(NotFound):
        service.complete_session_with_feedback("r1", "nope", FeedbackInput(rating=3))


def test_feedback_on_cancelled_request(service, store):
    request = _scheduled_request()
    request.status = RequestStatus.CANCELLED
    seed(store, make_startup(id="s1"), make_mentor("m1"), request)

    with pytest.raises(InvariantViolation) as excinfo:
        service.complete_session_with_feedback("r1", "sess-1", FeedbackInput(rating=3))

    assert excinfo.value.code == "REQUEST_CANCELLED"


def test_feedback_is_atomic_when_mentor_write_fails():
    faulty, service, _ = _faulty(make_startup(id="s1"), make_mentor("m1"), _scheduled_request())
    faulty.fail_on("mentors.save", StoreError("write failed"))

    with pytest.raises(StoreError):
        service.complete_session_with_feedback("r1", "sess-1", FeedbackInput(rating=5))

    session = load(faulty.inner, "requests", "r1").find_session("sess-1")
    assert session.status == SessionStatus.SCHEDULED
    assert session.founder_feedback is None
    assert load(faulty.inner, "mentors", "m1").total_ratings == 0


# --- bulk_update_startups_with_notifications ---------------------------------------


def test_bulk_update_skips_unknown_startups(service, store, sink):
    seed(
        store,
        make_startup(id="s1", founder_id="founder-1"),
        make_startup(id="s3", founder_id="founder-3"),
    )
    updates = [
        StartupStatusUpdate(startup_id=startup_id, new_status=StartupStatus.GRADUATED)
        for startup_id in ("s1", "s2", "s3")
    ]

    result = service.bulk_update_startups_with_notifications(updates, changed_by="admin-1")

    assert [startup.id for startup in result.updated] == ["s1", "s3"]
    assert [(skip.startup_id, skip.reason) for skip in result.skipped] == [("s2", "not_found")]
    assert load(store, "startups", "s1").status == StartupStatus.GRADUATED
    assert load(store, "startups", "s3").status == StartupStatus.GRADUATED
    assert sorted(n.recipient_id for n in sink.delivered) == ["founder-1", "founder-3"]
    assert len(sink.batches) == 1


def test_bulk_update_reports_unchanged_startups(service, store):
    seed(store, make_startup(id="s1", status=StartupStatus.GRADUATED))

    result = service.bulk_update_startups_with_notifications(
        [StartupStatusUpdate(startup_id="s1", new_status=StartupStatus.GRADUATED)]
    )

    assert result.updated == []
    assert result.notifications == []
    assert [skip.reason for skip in result.skipped] == ["unchanged"]


def test_bulk_update_rolls_back_on_invalid_transition(service, store, sink):
    seed(
        store,
        make_startup(id="s1", founder_id="founder-1"),
        make_startup(id="s2", founder_id="founder-2", status=StartupStatus.GRADUATED),
    )
    updates = [
        StartupStatusUpdate(startup_id="s1", new_status=StartupStatus.INACTIVE),
        StartupStatusUpdate(startup_id="s2", new_status=StartupStatus.PENDING),
    ]

    with pytest.raises(InvariantViolation) as excinfo:
        service.bulk_update_startups_with_notifications(updates)

    assert excinfo.value.code == "INVALID_TRANSITION"
    assert load(store, "startups", "s1").status == StartupStatus.ACTIVE
    assert sink.delivered == []


def test_bulk_update_rolls_back_everything_when_notifications_keep_failing():
    faulty, service, sink = _faulty(
        make_startup(id="s1", founder_id="founder-1"),
        make_startup(id="s3", founder_id="founder-3"),
    )
    faulty.fail_on("notifications.insert_many", TransientError("store unavailable"), times=None)
    updates = [
        StartupStatusUpdate(startup_id=startup_id, new_status=StartupStatus.GRADUATED)
        for startup_id in ("s1", "s2", "s3")
    ]

    with pytest.raises(TransientError):
        service.bulk_update_startups_with_notifications(updates)

    assert faulty.begun == 4
    for startup_id in ("s1", "s3"):
        startup = load(faulty.inner, "startups", startup_id)
        assert startup.status == StartupStatus.ACTIVE
        assert startup.status_history == []
    assert notifications_for(faulty.inner, "founder-1") == []
    assert sink.delivered == []


# --- create_mentorship_request / select_mentor -------------------------------------


@pytest.fixture
def mentor_pool(store):
    seed(
        store,
        make_startup(id="s1", name="Acme Robotics"),
        make_mentor("m1", expertise=["Sales", "Fundraising"]),
        make_mentor("m2", expertise=["sales"], slots_available=0),
        make_mentor("m3", expertise=["marketing"]),
        make_mentor("m4", expertise=["sales"], is_active=False),
    )
    return store


def _draft(**overrides):
    payload = {
        "topic": "Enterprise sales",
        "description": "Building our first outbound motion.",
        "skills": ["sales"],
    }
    payload.update(overrides)
    return MentorshipRequestDraft(**payload)


def test_create_request_ranks_active_mentors_and_notifies_available(service, mentor_pool, sink):
    result = service.create_mentorship_request(_draft(), "s1", "founder-1")

    request = result.request
    assert request.status == RequestStatus.PENDING
    assert request.selected_mentor_id is None
    assert request.domains == ["robotics"]
    assert [c.mentor_id for c in request.matched_mentors] == ["m1", "m3", "m2"]
    assert [c.available for c in request.matched_mentors] == [True, True, False]
    assert all(c.status == CandidateStatus.SUGGESTED for c in request.matched_mentors)
    assert sorted(n.recipient_id for n in result.notifications) == ["user-m1", "user-m3"]
    assert all(n.related_id == request.id for n in result.notifications)
    assert load(mentor_pool, "requests", request.id).matched_mentors == request.matched_mentors
    assert len(sink.delivered) == 2


def test_create_request_urgent_notifications_are_high_priority(service, mentor_pool):
    result = service.create_mentorship_request(_draft(urgency=Urgency.CRITICAL), "s1", "founder-1")

    assert {n.priority for n in result.notifications} == {NotificationPriority.HIGH}


def test_create_request_requires_an_approved_startup(service, store):
    seed(store, make_startup(id="s1", status=StartupStatus.PENDING))

    with pytest.raises(InvariantViolation) as excinfo:
        service.create_mentorship_request(_draft(), "s1", "founder-1")

    assert excinfo.value.code == "STARTUP_NOT_ELIGIBLE"


def test_create_request_is_atomic_when_notifications_fail():
    faulty, service, sink = _faulty(make_startup(id="s1"), make_mentor("m1", expertise=["sales"]))
    faulty.fail_on("notifications.insert_many", StoreError("write failed"))

    with pytest.raises(StoreError):
        service.create_mentorship_request(_draft(), "s1", "founder-1")

    assert "requests.insert" in faulty.calls
    assert notifications_for(faulty.inner, "user-m1") == []
    assert sink.delivered == []


def test_create_request_retried_after_lost_commit_creates_one_request():
    faulty, service, _ = _faulty(make_startup(id="s1"), make_mentor("m1", expertise=["sales"]))
    _drop_first_commit_acknowledgement(faulty)

    result = service.create_mentorship_request(_draft(), "s1", "founder-1")

    assert faulty.begun == 2
    assert load(faulty.inner, "requests", result.request.id).topic == "Enterprise sales"
    assert len(notifications_for(faulty.inner, "user-m1")) == 1


def test_create_request_with_reused_id_and_other_topic_conflicts(service, mentor_pool):
    first = service.create_mentorship_request(_draft(id="req-1"), "s1", "founder-1")
    replay = service.create_mentorship_request(_draft(id="req-1"), "s1", "founder-1")

    with pytest.raises(ConflictError) as excinfo:
        service.create_mentorship_request(_draft(id="req-1", topic="Hiring"), "s1", "founder-1")

    assert replay.request.id == first.request.id
    assert replay.notifications == []
    assert excinfo.value.code == "IDEMPOTENCY_KEY_REUSED"


def test_select_mentor_matches_request(service, mentor_pool, sink):
    request = service.create_mentorship_request(_draft(), "s1", "founder-1").request
    sink.batches.clear()

    result = service.select_mentor(request.id, "m1")

    assert result.request.status == RequestStatus.MATCHED
    assert result.request.selected_mentor_id == "m1"
    accepted = [c.mentor_id for c in result.request.matched_mentors if c.status == CandidateStatus.ACCEPTED]
    assert accepted == ["m1"]
    assert result.mentor.current_mentees == ["s1"]
    assert result.notification.type == NotificationType.MENTOR_SELECTED
    assert result.notification.recipient_id == "user-m1"
    assert [n.id for n in sink.delivered] == [result.notification.id]


def test_select_mentor_replay_returns_without_notification(service, mentor_pool):
    request = service.create_mentorship_request(_draft(), "s1", "founder-1").request
    service.select_mentor(request.id, "m1")

    replay = service.select_mentor(request.id, "m1")

    assert replay.notification is None
    assert load(mentor_pool, "mentors", "m1").current_mentees == ["s1"]
    assert len(notifications_for(mentor_pool, "user-m1")) == 2


def test_select_mentor_outside_the_candidate_list(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m9", expertise=["sales"]), make_request("s1", id="r1"))

    result = service.select_mentor("r1", "m9")

    assert [(c.mentor_id, c.status) for c in result.request.matched_mentors] == [
        ("m9", CandidateStatus.ACCEPTED)
    ]


def test_select_second_mentor_is_rejected(service, mentor_pool):
    request = service.create_mentorship_request(_draft(), "s1", "founder-1").request
    service.select_mentor(request.id, "m1")

    with pytest.raises(InvariantViolation) as excinfo:
        service.select_mentor(request.id, "m3")

    assert excinfo.value.code == "MENTOR_ALREADY_SELECTED"


@pytest.mark.parametrize(
    ("mentor_overrides", "code"),
    [
        ({"is_active": False}, "MENTOR_INACTIVE"),
        ({"max_mentees": 1, "current_mentees": ["other-startup"]}, "MENTOR_AT_CAPACITY"),
    ],
)
def test_select_mentor_rejections(service, store, mentor_overrides, code):
    seed(store, make_startup(id="s1"), make_mentor("m1", **mentor_overrides), make_request("s1", id="r1"))

    with pytest.raises(InvariantViolation) as excinfo:
        service.select_mentor("r1", "m1")

    assert excinfo.value.code == code
    assert load(store, "requests", "r1").status == RequestStatus.PENDING


def test_select_mentor_is_atomic_when_notification_fails():
    faulty, service, _ = _faulty(make_startup(id="s1"), make_mentor("m1"), make_request("s1", id="r1"))
    faulty.fail_on("notifications.insert", StoreError("write failed"))

    with pytest.raises(StoreError):
        service.select_mentor("r1", "m1")

    assert load(faulty.inner, "mentors", "m1").current_mentees == []
    assert load(faulty.inner, "requests", "r1").status == RequestStatus.PENDING


# --- cancel / complete -------------------------------------------------------------


def test_cancel_releases_scheduled_slots(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1", slots_available=1), make_request("s1", id="r1"))
    service.assign_mentor_and_create_session("r1", "m1", SessionSpec(scheduled_at=SCHEDULED_AT))

    result = service.cancel_mentorship_request("r1", cancelled_by="founder-1", reason="Found a cofounder")

    assert result.request.status == RequestStatus.CANCELLED
    assert result.request.cancelled_at == FIXED_NOW
    assert result.request.sessions[0].status == SessionStatus.CANCELLED
    assert result.released_slots == 1
    assert load(store, "mentors", "m1").slots_available == 1


def test_cancel_twice_is_rejected(service, store):
    seed(store, make_startup(id="s1"), make_request("s1", id="r1"))
    service.cancel_mentorship_request("r1")

    with pytest.raises(InvariantViolation) as excinfo:
        service.cancel_mentorship_request("r1")

    assert excinfo.value.code == "REQUEST_CLOSED"


def test_cancel_is_atomic_when_slot_release_fails():
    faulty, service, _ = _faulty(make_startup(id="s1"), make_mentor("m1", slots_available=2), _scheduled_request())
    faulty.fail_on("mentors.release_slots", StoreError("write failed"))

    with pytest.raises(StoreError):
        service.cancel_mentorship_request("r1")

    request = load(faulty.inner, "requests", "r1")
    assert request.status == RequestStatus.SCHEDULED
    assert request.sessions[0].status == SessionStatus.SCHEDULED


def test_complete_request_after_a_completed_session(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1"), _scheduled_request())
    service.complete_session_with_feedback("r1", "sess-1", FeedbackInput(rating=5))

    completed = service.complete_mentorship_request("r1")

    assert completed.status == RequestStatus.COMPLETED
    assert service.complete_mentorship_request("r1").status == RequestStatus.COMPLETED


def test_complete_request_requires_a_completed_session(service, store):
    seed(store, make_startup(id="s1"), make_mentor("m1"), _scheduled_request())

    with pytest.raises(InvariantViolation) as excinfo:
        service.complete_mentorship_request("r1")

    assert excinfo.value.code == "NO_COMPLETED_SESSION"


def test_complete_pending_request_is_rejected(service, store):
    seed(store, make_startup(id="s1"), make_request("s1", id="r1"))

    with pytest.raises(InvariantViolation) as excinfo:
        service.complete_mentorship_request("r1")

    assert excinfo.value.code == "REQUEST_NOT_SCHEDULED"


# --- observability -----------------------------------------------------------------


def test_workflow_metrics(monkeypatch, service, store):
    stub = StubMetrics()
    monkeypatch.setattr(workflow_module, "metrics", stub)
    seed(store, make_startup(id="s1", status=StartupStatus.PENDING))

    service.update_startup_status_with_notification("s1", StartupStatus.APPROVED)
    with pytest.raises(NotFound):
        service.update_startup_status_with_notification("missing", StartupStatus.APPROVED)

    assert stub.counted("workflows.success")[0]["tags"] == {"operation": "update_startup_status"}
    assert stub.counted("workflows.errors")[0]["tags"] == {
        "operation": "update_startup_status",
        "code": "NOT_FOUND",
    }
    assert len(stub.timed("workflows.latency_ms")) == 2


def test_sink_failures_do_not_undo_committed_work(store):
    class BrokenSink:
        def deliver(self, notifications):
            raise ConnectionError("smtp down")

    service = build_service(store, sink=BrokenSink())
    seed(store, make_startup(id="s1", status=StartupStatus.PENDING))

    result = service.update_startup_status_with_notification("s1", StartupStatus.APPROVED)

    assert result.notification is not None
    assert load(store, "startups", "s1").status == StartupStatus.APPROVED
