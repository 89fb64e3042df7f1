from types import SimpleNamespace

import pytest

from CiviReportAPI.constants import (
    TERMINAL_STATUSES,
    EmployeeStatus,
    IssueStatus,
    LifecycleEvent,
    Role,
    WorkUpdateType,
    parse_status,
)
from CiviReportAPI.errors import (
    ConcurrencyConflict,
    Forbidden,
    InvalidTransition,
    PreconditionFailed,
)
from CiviReportAPI.lifecycle import (
    TRANSITIONS,
    IssueLifecycle,
    TransitionRequest,
    list_available_transitions,
)
from CiviReportAPI.models import Notification, User, WorkUpdate
from CiviReportAPI.repositories import IssueRepository, WorkerCapacityTracker
from CiviReportAPI.tests.conftest import create_issue, create_user, move, unique_location


@pytest.fixture
def people(db_session):
    return SimpleNamespace(
        reporter=create_user(db_session, Role.CITIZEN),
        admin=create_user(db_session, Role.ADMIN),
        inspector=create_user(db_session, Role.INSPECTOR),
        worker=create_user(db_session, Role.WORKER),
        other_worker=create_user(db_session, Role.WORKER),
    )


def _load(db, user):
    return db.query(User).populate_existing().filter(User.id == user.id).one()


def _status(db, issue):
    return IssueRepository(db).current_status(issue.id)


def _assigned(db, people, **fields):
    issue = create_issue(db, people.reporter, **fields)
    return move(db, issue, people.admin, IssueStatus.ASSIGNED, assigned_to_id=people.worker.id)


def test_transition_table_has_no_exits_from_terminal_statuses():
    assert all(from_status not in TERMINAL_STATUSES for from_status, _ in TRANSITIONS)


@pytest.mark.parametrize("role", [Role.ADMIN, Role.WORKER, Role.INSPECTOR, Role.CITIZEN])
def test_reported_issue_cannot_jump_to_in_progress(db_session, role):
    reporter = create_user(db_session, Role.CITIZEN)
    actor = create_user(db_session, role)
    issue = create_issue(db_session, reporter)

    with pytest.raises(InvalidTransition) as exc:
        move(db_session, issue, actor, IssueStatus.IN_PROGRESS)
    assert exc.value.rule == "transition_not_allowed"
    assert _status(db_session, issue) == IssueStatus.REPORTED


def test_admin_assigns_worker(db_session, people):
    issue = _assigned(db_session, people)

    assert issue.status == IssueStatus.ASSIGNED.value
    assert issue.assigned_to_id == people.worker.id
    assert issue.assigned_at is not None
    assert _load(db_session, people.worker).current_load == 1

    history = IssueRepository(db_session).history(issue.id)
    assert [(h.from_status, h.to_status) for h in history] == [
        (None, "REPORTED"),
        ("REPORTED", "ASSIGNED"),
    ]
    assert history[-1].actor_id == people.admin.id
    assert history[-1].actor_role == Role.ADMIN.value

    notes = db_session.query(Notification).filter(Notification.user_id == people.worker.id).all()
    assert [n.event_type for n in notes] == [LifecycleEvent.ISSUE_ASSIGNED.value]
    assert notes[0].issue_id == issue.id


def test_only_the_assignee_can_act_on_an_assigned_issue(db_session, people):
    issue = _assigned(db_session, people)

    with pytest.raises(Forbidden):
        move(db_session, issue, people.other_worker, IssueStatus.IN_PROGRESS)
    with pytest.raises(Forbidden):
        move(db_session, issue, people.other_worker, IssueStatus.REJECTED, reason="Not mine")
    with pytest.raises(Forbidden):
        move(db_session, issue, people.other_worker, IssueStatus.RESOLVED)

    started = move(db_session, issue, people.worker, IssueStatus.IN_PROGRESS)
    assert started.status == IssueStatus.IN_PROGRESS.value
    assert started.started_at is not None


def test_roles_outside_the_rule_are_forbidden(db_session, people):
    issue = create_issue(db_session, people.reporter)
    with pytest.raises(Forbidden):
        move(db_session, issue, people.reporter, IssueStatus.ASSIGNED, assigned_to_id=people.worker.id)
    with pytest.raises(Forbidden):
        move(db_session, issue, people.inspector, IssueStatus.REJECTED, reason="Spam")

    issue = _assigned(db_session, people)
    with pytest.raises(Forbidden):
        move(db_session, issue, people.admin, IssueStatus.IN_PROGRESS)


def test_stale_expected_status_is_a_concurrency_conflict(db_session, people):
    issue = create_issue(db_session, people.reporter)
    request = TransitionRequest(expected_status=IssueStatus.ASSIGNED, new_status=IssueStatus.IN_PROGRESS)

    with pytest.raises(ConcurrencyConflict) as exc:
        IssueLifecycle(db_session).transition(issue.id, people.worker, request)
    assert exc.value.context["current_status"] == IssueStatus.REPORTED
    assert exc.value.detail()["current_status"] == "REPORTED"


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_rejection_requires_a_reason(db_session, people, reason):
    issue = create_issue(db_session, people.reporter)
    with pytest.raises(PreconditionFailed) as exc:
        move(db_session, issue, people.admin, IssueStatus.REJECTED, reason=reason)
    assert exc.value.rule == "reason_required"
    assert _status(db_session, issue) == IssueStatus.REPORTED


def test_rejection_records_reason_and_notifies_reporter(db_session, people):
    issue = create_issue(db_session, people.reporter)
    rejected = move(db_session, issue, people.admin, IssueStatus.REJECTED, reason="Duplicate of #12")

    assert rejected.status == IssueStatus.REJECTED.value
    assert rejected.rejection_reason == "Duplicate of #12"
    assert rejected.rejected_at is not None
    assert IssueRepository(db_session).history(issue.id)[-1].note == "Duplicate of #12"

    notes = db_session.query(Notification).filter(Notification.user_id == people.reporter.id, Notification.issue_id == issue.id).all()
    assert [n.event_type for n in notes] == [LifecycleEvent.ISSUE_REJECTED.value]


def test_rejecting_an_assigned_issue_releases_the_worker(db_session, people):
    issue = _assigned(db_session, people)
    assert _load(db_session, people.worker).current_load == 1

    move(db_session, issue, people.admin, IssueStatus.REJECTED, reason="Handled by the county")
    assert _load(db_session, people.worker).current_load == 0


@pytest.mark.parametrize("status", list(IssueStatus))
def test_rejected_is_terminal(db_session, people, status):
    issue = create_issue(db_session, people.reporter)
    move(db_session, issue, people.admin, IssueStatus.REJECTED, reason="Not a city asset")
    with pytest.raises(InvalidTransition):
        move(db_session, issue, people.admin, status, reason="again")


def test_assignment_preconditions(db_session, people):
    full = create_user(db_session, Role.WORKER, max_capacity=1, current_load=1)
    inactive = create_user(db_session, Role.WORKER, status=EmployeeStatus.ON_LEAVE.value)
    contractor = create_user(db_session, Role.CONTRACTOR)
    cases = [
        (None, "assignee_required"),
        (987654321, "assignee_unknown"),
        (full.id, "worker_capacity"),
        (inactive.id, "worker_active"),
        (contractor.id, "accepted_bid_required"),
        (people.inspector.id, "assignee_role"),
    ]
    for assignee_id, rule in cases:
        issue = create_issue(db_session, people.reporter)
        with pytest.raises(PreconditionFailed) as exc:
            move(db_session, issue, people.admin, IssueStatus.ASSIGNED, assigned_to_id=assignee_id)
        assert exc.value.rule == rule
        assert _status(db_session, issue) == IssueStatus.REPORTED
    assert _load(db_session, full).current_load == 1


def test_open_for_bidding_requires_contractor_eligibility(db_session, people):
    issue = create_issue(db_session, people.reporter)
    with pytest.raises(PreconditionFailed) as exc:
        move(db_session, issue, people.admin, IssueStatus.OPEN_FOR_BIDDING)
    assert exc.value.rule == "contractor_eligible"

    eligible = create_issue(db_session, people.reporter, contractor_eligible=True)
    assert move(db_session, eligible, people.admin, IssueStatus.OPEN_FOR_BIDDING).status == IssueStatus.OPEN_FOR_BIDDING.value


def test_reopening_for_bidding_releases_the_worker(db_session, people):
    issue = _assigned(db_session, people, contractor_eligible=True)
    reopened = move(db_session, issue, people.admin, IssueStatus.OPEN_FOR_BIDDING)

    assert reopened.assigned_to_id is None
    assert _load(db_session, people.worker).current_load == 0


def test_issue_open_for_bidding_is_assigned_only_by_accepting_a_bid(db_session, people):
    issue = create_issue(db_session, people.reporter, contractor_eligible=True)
    move(db_session, issue, people.admin, IssueStatus.OPEN_FOR_BIDDING)

    with pytest.raises(PreconditionFailed) as exc:
        move(db_session, issue, people.admin, IssueStatus.ASSIGNED, assigned_to_id=people.worker.id)
    assert exc.value.rule == "accepted_bid_required"


def test_submitting_for_inspection_needs_a_completion_update(db_session, people):
    issue = _assigned(db_session, people)
    move(db_session, issue, people.worker, IssueStatus.IN_PROGRESS)

    with pytest.raises(PreconditionFailed) as exc:
        move(db_session, issue, people.worker, IssueStatus.PENDING_INSPECTION)
    assert exc.value.rule == "terminal_work_update"


@pytest.mark.parametrize("target", [IssueStatus.PENDING_INSPECTION, IssueStatus.COMPLETED])
def test_assigned_worker_may_finish_to_either_awaiting_status(db_session, people, target):
    issue = _assigned(db_session, people)
    move(db_session, issue, people.worker, IssueStatus.IN_PROGRESS)
    assert set(list_available_transitions(IssueRepository(db_session).require(issue.id), people.worker)) == {
        IssueStatus.PENDING_INSPECTION,
        IssueStatus.COMPLETED,
    }
    db_session.add(WorkUpdate(
        issue_id=issue.id,
        worker_id=people.worker.id,
        update_type=WorkUpdateType.COMPLETED.value,
        description="Lamp head replaced",
        progress_percentage=100,
    ))
    db_session.commit()

    finished = move(db_session, issue, people.worker, target)

    assert finished.status == target.value
    assert finished.completed_at is not None


def test_available_transitions_follow_role_and_assignment(db_session, people):
    issue = create_issue(db_session, people.reporter)
    assert set(list_available_transitions(issue, people.admin)) == {
        IssueStatus.ASSIGNED,
        IssueStatus.REJECTED,
        IssueStatus.OPEN_FOR_BIDDING,
    }
    assert list_available_transitions(issue, people.worker) == []
    assert list_available_transitions(issue, people.reporter) == []

    issue = _assigned(db_session, people)
    assert list_available_transitions(issue, people.worker) == [IssueStatus.IN_PROGRESS]
    assert list_available_transitions(issue, people.other_worker) == []
    assert list_available_transitions(issue, people.inspector) == []


def test_auto_assign_picks_least_loaded_worker_covering_the_issue(db_session, people):
    lat, lon = unique_location()
    area = dict(work_latitude=lat, work_longitude=lon, work_radius_km=2.0, max_capacity=5)
    busy = create_user(db_session, Role.WORKER, current_load=3, **area)
    idle = create_user(db_session, Role.WORKER, current_load=1, **area)
    create_user(db_session, Role.WORKER, current_load=0, status=EmployeeStatus.INACTIVE.value, **area)
    create_user(db_session, Role.WORKER, current_load=0, max_capacity=0, work_latitude=lat, work_longitude=lon, work_radius_km=2.0)

    issue = create_issue(db_session, people.reporter, latitude=lat + 0.001, longitude=lon)
    assigned = IssueLifecycle(db_session).auto_assign(issue.id, people.admin)

    assert assigned.status == IssueStatus.ASSIGNED.value
    assert assigned.assigned_to_id == idle.id
    assert _load(db_session, idle).current_load == 2
    assert _load(db_session, busy).current_load == 3


def test_auto_assign_falls_back_to_bidding(db_session, people):
    issue = create_issue(db_session, people.reporter, contractor_eligible=True)
    result = IssueLifecycle(db_session).auto_assign(issue.id, people.admin)
    assert result.status == IssueStatus.OPEN_FOR_BIDDING.value


def test_auto_assign_without_worker_or_bidding_fails(db_session, people):
    issue = create_issue(db_session, people.reporter)
    with pytest.raises(PreconditionFailed) as exc:
        IssueLifecycle(db_session).auto_assign(issue.id, people.admin)
    assert exc.value.rule == "worker_available"


def test_auto_assign_is_admin_only_and_needs_reported_issue(db_session, people):
    issue = create_issue(db_session, people.reporter, contractor_eligible=True)
    with pytest.raises(Forbidden):
        IssueLifecycle(db_session).auto_assign(issue.id, people.inspector)

    move(db_session, issue, people.admin, IssueStatus.OPEN_FOR_BIDDING)
    with pytest.raises(InvalidTransition):
        IssueLifecycle(db_session).auto_assign(issue.id, people.admin)


def test_capacity_tracker_never_exceeds_capacity_or_goes_negative(db_session):
    worker = create_user(db_session, Role.WORKER, max_capacity=1, current_load=0)
    tracker = WorkerCapacityTracker(db_session)

    assert tracker.increment_load(worker.id) is True
    assert tracker.increment_load(worker.id) is False
    tracker.decrement_load(worker.id)
    tracker.decrement_load(worker.id)
    db_session.commit()
    assert _load(db_session, worker).current_load == 0


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("reported", IssueStatus.REPORTED),
        ("In Progress", IssueStatus.IN_PROGRESS),
        ("in-progress", IssueStatus.IN_PROGRESS),
        ("open for bidding", IssueStatus.OPEN_FOR_BIDDING),
        ("pending_verification", IssueStatus.PENDING_INSPECTION),
        ("Closed", IssueStatus.RESOLVED),
        (IssueStatus.REJECTED, IssueStatus.REJECTED),
    ],
)
def test_external_status_spellings(raw, expected):
    assert parse_status(raw) == expected


@pytest.mark.parametrize("raw", ["", "done-ish", None])
def test_unknown_status_spelling_is_rejected(raw):
    with pytest.raises(ValueError):
        parse_status(raw)
