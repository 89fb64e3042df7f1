from types import SimpleNamespace

import pytest

from CiviReportAPI.bidding import AUTO_REJECTION_NOTE, BidWorkflow
from CiviReportAPI.constants import BidStatus, IssueStatus, LifecycleEvent, Role
from CiviReportAPI.errors import (
    ConcurrencyConflict,
    Forbidden,
    InvalidTransition,
    PreconditionFailed,
    ValidationError,
)
from CiviReportAPI.lifecycle import AUTO_BID_REJECTION_NOTE, AWARD_WITHDRAWN_NOTE
from CiviReportAPI.models import Bid, Notification
from CiviReportAPI.repositories import BidRepository, IssueRepository
from CiviReportAPI.tests.conftest import auth_headers, create_issue, create_user, move


@pytest.fixture
def bidding(db_session):
    reporter = create_user(db_session, Role.CITIZEN)
    admin = create_user(db_session, Role.ADMIN)
    issue = create_issue(db_session, reporter, contractor_eligible=True)
    issue = move(db_session, issue, admin, IssueStatus.OPEN_FOR_BIDDING)
    contractors = [create_user(db_session, Role.CONTRACTOR) for _ in range(3)]
    return SimpleNamespace(reporter=reporter, admin=admin, issue=issue, contractors=contractors)


def _events(db, user_id):
    return [
        n.event_type
        for n in db.query(Notification).filter(Notification.user_id == user_id).order_by(Notification.id).all()
    ]


def test_accepting_a_bid_assigns_the_contractor_and_rejects_the_rest(db_session, bidding):
    workflow = BidWorkflow(db_session)
    c1, c2, c3 = bidding.contractors
    b1 = workflow.submit(c1, bidding.issue.id, 5000, 10, "Full resurfacing")
    b2 = workflow.submit(c2, bidding.issue.id, 6500, 7)
    b3 = workflow.submit(c3, bidding.issue.id, 7200, 5)

    accepted = workflow.review(b1.id, bidding.admin, BidStatus.ACCEPTED, notes="Lowest price")

    assert accepted.status == BidStatus.ACCEPTED.value
    assert accepted.reviewed_by_id == bidding.admin.id
    repo = BidRepository(db_session)
    for other in (b2, b3):
        bid = repo.get(other.id)
        assert bid.status == BidStatus.REJECTED.value
        assert bid.review_notes == AUTO_REJECTION_NOTE

    issue = IssueRepository(db_session).require(bidding.issue.id)
    assert issue.status == IssueStatus.ASSIGNED.value
    assert issue.assigned_to_id == c1.id
    last = IssueRepository(db_session).history(issue.id)[-1]
    assert (last.from_status, last.to_status, last.actor_id) == ("OPEN_FOR_BIDDING", "ASSIGNED", bidding.admin.id)

    assert set(_events(db_session, c1.id)) == {LifecycleEvent.ISSUE_ASSIGNED.value, LifecycleEvent.BID_ACCEPTED.value}
    assert _events(db_session, c2.id) == [LifecycleEvent.BID_REJECTED.value]
    assert _events(db_session, c3.id) == [LifecycleEvent.BID_REJECTED.value]

    accepted_count = db_session.query(Bid).filter(
        Bid.issue_id == issue.id, Bid.status == BidStatus.ACCEPTED.value
    ).count()
    assert accepted_count == 1


def test_rejecting_a_bid_requires_notes(db_session, bidding):
    workflow = BidWorkflow(db_session)
    bid = workflow.submit(bidding.contractors[0], bidding.issue.id, 4200, 3)

    with pytest.raises(PreconditionFailed) as exc:
        workflow.review(bid.id, bidding.admin, BidStatus.REJECTED, notes="  ")
    assert exc.value.rule == "notes_required"
    assert BidRepository(db_session).get(bid.id).status == BidStatus.PENDING.value

    rejected = workflow.review(bid.id, bidding.admin, BidStatus.REJECTED, notes="Timeline too long")
    assert rejected.status == BidStatus.REJECTED.value
    assert rejected.review_notes == "Timeline too long"
    assert IssueRepository(db_session).current_status(bidding.issue.id) == IssueStatus.OPEN_FOR_BIDDING


def test_reopening_an_award_withdraws_the_accepted_bid(db_session, bidding):
    workflow = BidWorkflow(db_session)
    c1, c2, _ = bidding.contractors
    first = workflow.submit(c1, bidding.issue.id, 5000, 10)
    workflow.review(first.id, bidding.admin, BidStatus.ACCEPTED, notes="Lowest price")
    move(db_session, bidding.issue, bidding.admin, IssueStatus.OPEN_FOR_BIDDING)

    withdrawn = BidRepository(db_session).get(first.id)
    assert withdrawn.status == BidStatus.REJECTED.value
    assert withdrawn.review_notes == AWARD_WITHDRAWN_NOTE
    assert _events(db_session, c1.id)[-1] == LifecycleEvent.BID_REJECTED.value

    second = workflow.submit(c2, bidding.issue.id, 5600, 8)
    accepted = workflow.review(second.id, bidding.admin, BidStatus.ACCEPTED, notes="Contractor available")

    assert accepted.status == BidStatus.ACCEPTED.value
    issue = IssueRepository(db_session).require(bidding.issue.id)
    assert issue.status == IssueStatus.ASSIGNED.value
    assert issue.assigned_to_id == c2.id
    statuses = [b.status for b in BidRepository(db_session).list_for_issue(issue.id)]
    assert statuses.count(BidStatus.ACCEPTED.value) == 1


def test_second_accepted_bid_on_an_issue_is_a_conflict(db_session, bidding):
    workflow = BidWorkflow(db_session)
    c1, c2, _ = bidding.contractors
    pending = workflow.submit(c2, bidding.issue.id, 3100, 4)
    # An award recorded outside the workflow still holds the issue's single ACCEPTED slot
    db_session.add(Bid(
        issue_id=bidding.issue.id,
        contractor_id=c1.id,
        amount=2900,
        estimated_days=6,
        status=BidStatus.ACCEPTED.value,
    ))
    db_session.commit()

    with pytest.raises(ConcurrencyConflict) as exc:
        workflow.review(pending.id, bidding.admin, BidStatus.ACCEPTED, notes="Faster")

    assert exc.value.rule == "accepted_bid_exists"
    assert BidRepository(db_session).get(pending.id).status == BidStatus.PENDING.value
    assert IssueRepository(db_session).current_status(bidding.issue.id) == IssueStatus.OPEN_FOR_BIDDING


def test_reviewed_bids_cannot_be_reviewed_again(db_session, bidding):
    workflow = BidWorkflow(db_session)
    bid = workflow.submit(bidding.contractors[0], bidding.issue.id, 900, 2)
    workflow.review(bid.id, bidding.admin, BidStatus.REJECTED, notes="Too vague")

    for decision in (BidStatus.ACCEPTED, BidStatus.REJECTED, BidStatus.PENDING):
        with pytest.raises(InvalidTransition):
            workflow.review(bid.id, bidding.admin, decision, notes="again")


def test_only_admins_review_bids(db_session, bidding):
    workflow = BidWorkflow(db_session)
    bid = workflow.submit(bidding.contractors[0], bidding.issue.id, 900, 2)
    with pytest.raises(Forbidden):
        workflow.review(bid.id, bidding.contractors[1], BidStatus.ACCEPTED)
    assert BidRepository(db_session).get(bid.id).status == BidStatus.PENDING.value


def test_bid_submission_rules(db_session, bidding):
    workflow = BidWorkflow(db_session)
    contractor = bidding.contractors[0]

    with pytest.raises(Forbidden):
        workflow.submit(bidding.reporter, bidding.issue.id, 100, 1)
    with pytest.raises(ValidationError):
        workflow.submit(contractor, bidding.issue.id, 0, 1)
    with pytest.raises(ValidationError):
        workflow.submit(contractor, bidding.issue.id, 100, -2)

    workflow.submit(contractor, bidding.issue.id, 100, 1)
    with pytest.raises(PreconditionFailed) as exc:
        workflow.submit(contractor, bidding.issue.id, 90, 1)
    assert exc.value.rule == "duplicate_bid"

    closed = create_issue(db_session, bidding.reporter, contractor_eligible=True)
    with pytest.raises(PreconditionFailed) as exc:
        workflow.submit(contractor, closed.id, 100, 1)
    assert exc.value.rule == "issue_open_for_bidding"


def test_accepting_a_bid_on_an_issue_already_in_work_fails(db_session, bidding):
    worker = create_user(db_session, Role.WORKER)
    issue = create_issue(db_session, bidding.reporter, contractor_eligible=True)
    move(db_session, issue, bidding.admin, IssueStatus.ASSIGNED, assigned_to_id=worker.id)
    # left over from before the issue was assigned directly
    stray = BidRepository(db_session).create(
        issue_id=issue.id, contractor_id=bidding.contractors[0].id, amount=300, estimated_days=2
    )
    db_session.commit()

    with pytest.raises(InvalidTransition):
        BidWorkflow(db_session).review(stray.id, bidding.admin, BidStatus.ACCEPTED)
    assert BidRepository(db_session).get(stray.id).status == BidStatus.PENDING.value
    assert IssueRepository(db_session).require(issue.id).assigned_to_id == worker.id


def test_rejecting_an_issue_open_for_bidding_rejects_pending_bids(db_session, bidding):
    workflow = BidWorkflow(db_session)
    bids = [workflow.submit(c, bidding.issue.id, 1000 + i, 4) for i, c in enumerate(bidding.contractors)]

    move(db_session, bidding.issue, bidding.admin, IssueStatus.REJECTED, reason="Budget withdrawn")

    repo = BidRepository(db_session)
    for bid in bids:
        refreshed = repo.get(bid.id)
        assert refreshed.status == BidStatus.REJECTED.value
        assert refreshed.review_notes == AUTO_BID_REJECTION_NOTE


def test_bid_endpoints(test_client, db_session, bidding):
    contractor = bidding.contractors[0]
    issue_id = bidding.issue.id

    response = test_client.post(
        "/bids", json={"issue_id": issue_id, "amount": 0, "estimated_days": 3}, headers=auth_headers(contractor)
    )
    assert response.status_code == 422

    response = test_client.post(
        "/bids",
        json={"issue_id": issue_id, "amount": 2500, "estimated_days": 3, "proposal": "Patch and seal"},
        headers=auth_headers(contractor),
    )
    assert response.status_code == 201
    bid_id = response.json()["id"]
    assert response.json()["status"] == "PENDING"

    mine = test_client.get("/bids/mine", headers=auth_headers(contractor))
    assert [b["id"] for b in mine.json()] == [bid_id]

    listed = test_client.get(f"/bids/issue/{issue_id}", headers=auth_headers(bidding.admin))
    assert [b["id"] for b in listed.json()] == [bid_id]
    assert test_client.get(f"/bids/issue/{issue_id}", headers=auth_headers(contractor)).status_code == 403

    response = test_client.put(f"/bids/{bid_id}/review", json={"status": "rejected"}, headers=auth_headers(bidding.admin))
    assert response.status_code == 412
    assert response.json()["detail"]["rule"] == "notes_required"

    response = test_client.put(
        f"/bids/{bid_id}/review", json={"status": "accepted", "notes": "Good plan"}, headers=auth_headers(bidding.admin)
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ACCEPTED"

    issue = test_client.get(f"/issues/{issue_id}").json()
    assert issue["status"] == "ASSIGNED"
    assert issue["assigned_to_id"] == contractor.id

    response = test_client.put(
        f"/bids/{bid_id}/review", json={"status": "rejected", "notes": "changed mind"}, headers=auth_headers(bidding.admin)
    )
    assert response.status_code == 409
