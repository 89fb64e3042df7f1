"""
Contractor bid workflow.

Bids move PENDING -> ACCEPTED | REJECTED exactly once. Accepting a bid is a
single transaction: the bid is accepted, every other PENDING bid on the issue
is rejected, and the issue moves to ASSIGNED with the contractor as assignee
through the lifecycle, history row included.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from CiviReportAPI.constants import BidStatus, IssueStatus, LifecycleEvent, Role
from CiviReportAPI.errors import (
    ConcurrencyConflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from CiviReportAPI.lifecycle import IssueLifecycle, TransitionRequest, actor_role
from CiviReportAPI.models import Bid, User
from CiviReportAPI.notification_service import NotificationDispatcher, PendingNotification

logger = logging.getLogger(__name__)

AUTO_REJECTION_NOTE = "Another bid was accepted for this issue."

BIDDABLE_STATUSES = frozenset({IssueStatus.REPORTED, IssueStatus.OPEN_FOR_BIDDING})


class BidWorkflow:
    def __init__(self, db: Session, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.lifecycle = IssueLifecycle(db, notifier)
        self.bids = self.lifecycle.bids
        self.issues = self.lifecycle.issues
        self.notifier = self.lifecycle.notifier

    def submit(
        self,
        contractor: User,
        issue_id: int,
        amount: float,
        estimated_days: float,
        proposal: Optional[str] = None,
    ) -> Bid:
        """
        Place a bid on an issue open for bidding.

        Raises:
            NotFound: Unknown issue.
            Forbidden: The actor is not a contractor.
            ValidationError: Non-positive amount or duration.
            PreconditionFailed: The issue is not open for bidding, or the
                contractor already has a pending bid on it.
        """
        issue = self.issues.require(issue_id)
        if actor_role(contractor) != Role.CONTRACTOR:
            raise Forbidden("Only contractors can submit bids", rule="role_not_permitted")
        if amount is None or amount <= 0:
            raise ValidationError("Bid amount must be greater than zero", rule="positive_amount")
        if estimated_days is None or estimated_days <= 0:
            raise ValidationError("Estimated days must be greater than zero", rule="positive_duration")
        if issue.status != IssueStatus.OPEN_FOR_BIDDING.value or not issue.contractor_eligible:
            raise PreconditionFailed(
                "Issue is not open for bidding",
                rule="issue_open_for_bidding",
                issue_id=issue.id,
                current_status=issue.status,
            )
        if self.bids.has_pending_from(issue.id, contractor.id):
            raise PreconditionFailed(
                "You already have a pending bid on this issue",
                rule="duplicate_bid",
                issue_id=issue.id,
            )
        try:
            bid = self.bids.create(
                issue_id=issue.id,
                contractor_id=contractor.id,
                amount=amount,
                estimated_days=estimated_days,
                proposal=proposal,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(bid)
        logger.info("Contractor %s bid %s on issue %s", contractor.id, amount, issue.id)
        return bid

    def review(self, bid_id: int, admin: User, decision: BidStatus, notes: Optional[str] = None) -> Bid:
        """
        Accept or reject a pending bid.

        Args:
            bid_id (int): The bid under review.
            admin (User): The reviewing administrator.
            decision (BidStatus): ACCEPTED or REJECTED.
            notes (str): Review notes; required when rejecting.

        Returns:
            Bid: The reviewed bid.

        Raises:
            NotFound: Unknown bid.
            InvalidTransition: The bid was already reviewed, or the issue
                cannot be assigned from its current status.
            Forbidden: The actor is not an administrator.
            PreconditionFailed: Rejection without notes.
            ConcurrencyConflict: Another review or transition won the race.
        """
        try:
            bid = self.bids.get(bid_id)
            if bid is None:
                raise NotFound(f"Bid {bid_id} not found", bid_id=bid_id)
            if decision not in (BidStatus.ACCEPTED, BidStatus.REJECTED) or bid.status != BidStatus.PENDING.value:
                raise InvalidTransition(
                    f"Cannot move a bid from {bid.status} to {decision.value}",
                    rule="bid_transition_not_allowed",
                    from_status=bid.status,
                    to_status=decision,
                )
            if actor_role(admin) != Role.ADMIN:
                raise Forbidden("Only administrators can review bids", rule="role_not_permitted")

            if decision == BidStatus.ACCEPTED:
                events = self._accept(bid, admin, notes)
            else:
                events = self._reject(bid, admin, notes)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            # One ACCEPTED bid per issue is enforced by a unique index
            raise ConcurrencyConflict(
                f"Issue already has an accepted bid; bid {bid_id} was not accepted",
                rule="accepted_bid_exists",
                bid_id=bid_id,
            ) from exc
        except Exception:
            self.db.rollback()
            raise

        self.notifier.dispatch(events)
        return self.bids.get(bid_id)

    def _accept(self, bid: Bid, admin: User, notes: Optional[str]):
        issue = self.issues.require(bid.issue_id)
        current = IssueStatus(issue.status)
        if current not in BIDDABLE_STATUSES:
            raise InvalidTransition(
                f"Cannot accept a bid on an issue that is {current.value}",
                rule="transition_not_allowed",
                from_status=current,
                to_status=IssueStatus.ASSIGNED,
            )
        others = [b for b in self.bids.list_pending(issue.id) if b.id != bid.id]

        rejected = self.bids.accept_and_reject_others(bid.id, issue.id, admin.id, notes, AUTO_REJECTION_NOTE)
        if rejected is None:
            raise ConcurrencyConflict(
                f"Bid {bid.id} was reviewed concurrently",
                rule="bid_already_reviewed",
                bid_id=bid.id,
                current_status=self.bids.get(bid.id).status,
            )

        request = TransitionRequest(
            expected_status=current,
            new_status=IssueStatus.ASSIGNED,
            assigned_to_id=bid.contractor_id,
            notes=notes,
        )
        events = self.lifecycle.apply(issue, admin, request, accepted_bid=bid)

        payload = {"issue_id": issue.id, "title": issue.title, "bid_id": bid.id, "amount": bid.amount, "notes": notes}
        events.append(PendingNotification(bid.contractor_id, LifecycleEvent.BID_ACCEPTED, payload))
        for other in others:
            events.append(PendingNotification(
                other.contractor_id,
                LifecycleEvent.BID_REJECTED,
                {"issue_id": issue.id, "title": issue.title, "bid_id": other.id, "notes": AUTO_REJECTION_NOTE},
            ))
        logger.info("Accepted bid %s on issue %s; rejected %s other bids", bid.id, issue.id, rejected)
        return events

    def _reject(self, bid: Bid, admin: User, notes: Optional[str]):
        if not (notes or "").strip():
            raise PreconditionFailed("Notes are required when rejecting a bid", rule="notes_required", bid_id=bid.id)
        if not self.bids.review(bid.id, BidStatus.REJECTED, admin.id, notes.strip()):
            raise ConcurrencyConflict(
                f"Bid {bid.id} was reviewed concurrently",
                rule="bid_already_reviewed",
                bid_id=bid.id,
                current_status=self.bids.get(bid.id).status,
            )
        issue = self.issues.require(bid.issue_id)
        payload = {"issue_id": issue.id, "title": issue.title, "bid_id": bid.id, "notes": notes.strip()}
        return [PendingNotification(bid.contractor_id, LifecycleEvent.BID_REJECTED, payload)]
