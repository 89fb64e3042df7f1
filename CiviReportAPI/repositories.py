"""
Data access for issues, bids and worker capacity.

Status and load columns are only changed with conditional UPDATE statements
whose WHERE clause carries the expected prior value, so concurrent writers
are detected by the row count instead of being silently overwritten.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, selectinload

from CiviReportAPI.constants import (
    BidStatus,
    EmployeeStatus,
    IssueCategory,
    IssueStatus,
    Role,
    VerificationStatus,
    WorkUpdateType,
)
from CiviReportAPI.errors import NotFound
from CiviReportAPI.models import Bid, Issue, IssueStatusChange, User, WorkUpdate
from CiviReportAPI.utils import BoundingBox, haversine_meters, utcnow

logger = logging.getLogger(__name__)


def _value(status):
    return status.value if hasattr(status, "value") else status


class IssueRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, issue_id: int) -> Optional[Issue]:
        # populate_existing so a retried operation sees the committed status
        return (
            self.db.query(Issue)
            .populate_existing()
            .filter(Issue.id == issue_id)
            .first()
        )

    def require(self, issue_id: int) -> Issue:
        issue = self.get(issue_id)
        if issue is None:
            raise NotFound(f"Issue {issue_id} not found", issue_id=issue_id)
        return issue

    def create(self, **fields) -> Issue:
        issue = Issue(status=IssueStatus.REPORTED.value, **fields)
        self.db.add(issue)
        self.db.flush()
        return issue

    def current_status(self, issue_id: int) -> Optional[IssueStatus]:
        value = self.db.query(Issue.status).filter(Issue.id == issue_id).scalar()
        return IssueStatus(value) if value else None

    def compare_and_transition(
        self,
        issue_id: int,
        expected: IssueStatus,
        new: IssueStatus,
        patch: Optional[Dict] = None,
    ) -> bool:
        """
        Move an issue from `expected` to `new` if its persisted status still
        equals `expected`.

        Args:
            issue_id (int): The issue to update.
            expected (IssueStatus): Status the caller observed.
            new (IssueStatus): Status to write.
            patch (dict): Extra columns written in the same statement.

        Returns:
            bool: True if the row was updated, False if the status had changed.
        """
        values = dict(patch or {})
        values["status"] = _value(new)
        values["updated_at"] = utcnow()
        stmt = (
            update(Issue)
            .where(Issue.id == issue_id, Issue.status == _value(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def record_change(
        self,
        issue_id: int,
        from_status: Optional[IssueStatus],
        to_status: IssueStatus,
        actor: Optional[User],
        note: Optional[str] = None,
    ) -> IssueStatusChange:
        change = IssueStatusChange(
            issue_id=issue_id,
            from_status=_value(from_status) if from_status else None,
            to_status=_value(to_status),
            actor_id=actor.id if actor else None,
            actor_role=actor.role if actor else None,
            note=note,
        )
        self.db.add(change)
        return change

    def history(self, issue_id: int) -> List[IssueStatusChange]:
        return (
            self.db.query(IssueStatusChange)
            .filter(IssueStatusChange.issue_id == issue_id)
            .order_by(IssueStatusChange.id)
            .all()
        )

    def find_candidates(
        self,
        category: IssueCategory,
        bbox: BoundingBox,
        since: datetime,
        limit: int = 200,
    ) -> List[Issue]:
        """
        Recent issues of a category inside a bounding box, newest first.

        REJECTED issues are never candidates.
        """
        return (
            self.db.query(Issue)
            .options(selectinload(Issue.photos))
            .filter(
                Issue.category == _value(category),
                Issue.status != IssueStatus.REJECTED.value,
                Issue.created_at >= since,
                Issue.latitude.between(bbox.min_lat, bbox.max_lat),
                Issue.longitude.between(bbox.min_lon, bbox.max_lon),
            )
            .order_by(Issue.created_at.desc(), Issue.id.desc())
            .limit(limit)
            .all()
        )

    def pending_terminal_update(self, issue_id: int, worker_id: Optional[int] = None) -> Optional[WorkUpdate]:
        """Latest COMPLETED work update still awaiting verification."""
        query = self.db.query(WorkUpdate).filter(
            WorkUpdate.issue_id == issue_id,
            WorkUpdate.update_type == WorkUpdateType.COMPLETED.value,
            WorkUpdate.verification_status == VerificationStatus.PENDING.value,
        )
        if worker_id is not None:
            query = query.filter(WorkUpdate.worker_id == worker_id)
        return query.order_by(WorkUpdate.id.desc()).first()


class BidRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, bid_id: int) -> Optional[Bid]:
        return self.db.query(Bid).populate_existing().filter(Bid.id == bid_id).first()

    def create(self, **fields) -> Bid:
        bid = Bid(status=BidStatus.PENDING.value, **fields)
        self.db.add(bid)
        self.db.flush()
        return bid

    def list_pending(self, issue_id: int) -> List[Bid]:
        return (
            self.db.query(Bid)
            .filter(Bid.issue_id == issue_id, Bid.status == BidStatus.PENDING.value)
            .order_by(Bid.id)
            .all()
        )

    def list_for_issue(self, issue_id: int) -> List[Bid]:
        return self.db.query(Bid).filter(Bid.issue_id == issue_id).order_by(Bid.amount, Bid.id).all()

    def list_for_contractor(self, contractor_id: int) -> List[Bid]:
        return (
            self.db.query(Bid)
            .filter(Bid.contractor_id == contractor_id)
            .order_by(Bid.created_at.desc(), Bid.id.desc())
            .all()
        )

    def has_pending_from(self, issue_id: int, contractor_id: int) -> bool:
        return (
            self.db.query(Bid.id)
            .filter(
                Bid.issue_id == issue_id,
                Bid.contractor_id == contractor_id,
                Bid.status == BidStatus.PENDING.value,
            )
            .first()
            is not None
        )

    def accepted_for(self, issue_id: int, contractor_id: int) -> Optional[Bid]:
        return (
            self.db.query(Bid)
            .filter(
                Bid.issue_id == issue_id,
                Bid.contractor_id == contractor_id,
                Bid.status == BidStatus.ACCEPTED.value,
            )
            .first()
        )

    def review(self, bid_id: int, new_status: BidStatus, reviewer_id: int, notes: Optional[str]) -> bool:
        """Settle a PENDING bid. Returns False if it was no longer PENDING."""
        stmt = (
            update(Bid)
            .where(Bid.id == bid_id, Bid.status == BidStatus.PENDING.value)
            .values(
                status=new_status.value,
                review_notes=notes,
                reviewed_by_id=reviewer_id,
                reviewed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def reject_pending(self, issue_id: int, reviewer_id: int, note: str, exclude_bid_id: Optional[int] = None) -> int:
        """Reject every PENDING bid on an issue. Returns the number rejected."""
        conditions = [Bid.issue_id == issue_id, Bid.status == BidStatus.PENDING.value]
        if exclude_bid_id is not None:
            conditions.append(Bid.id != exclude_bid_id)
        stmt = (
            update(Bid)
            .where(*conditions)
            .values(
                status=BidStatus.REJECTED.value,
                review_notes=note,
                reviewed_by_id=reviewer_id,
                reviewed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def withdraw_accepted(self, issue_id: int, reviewer_id: int, note: str) -> List[Bid]:
        """Move the issue's ACCEPTED bid to REJECTED. Returns the withdrawn bids."""
        accepted = (
            self.db.query(Bid)
            .filter(Bid.issue_id == issue_id, Bid.status == BidStatus.ACCEPTED.value)
            .all()
        )
        if not accepted:
            return []
        stmt = (
            update(Bid)
            .where(Bid.id.in_([b.id for b in accepted]), Bid.status == BidStatus.ACCEPTED.value)
            .values(
                status=BidStatus.REJECTED.value,
                review_notes=note,
                reviewed_by_id=reviewer_id,
                reviewed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)
        return accepted

    def accept_and_reject_others(self, bid_id: int, issue_id: int, reviewer_id: int, notes: Optional[str], rejection_note: str) -> Optional[int]:
        """
        Accept one bid and reject the other PENDING bids on the same issue.

        Does not commit; the caller owns the transaction.

        Returns:
            Optional[int]: Number of bids rejected, or None if the bid was no
            longer PENDING.
        """
        if not self.review(bid_id, BidStatus.ACCEPTED, reviewer_id, notes):
            return None
        return self.reject_pending(issue_id, reviewer_id, rejection_note, exclude_bid_id=bid_id)


class WorkerCapacityTracker:
    def __init__(self, db: Session):
        self.db = db

    def increment_load(self, worker_id: int) -> bool:
        """Add one open issue to a worker. Returns False if the worker is at capacity."""
        stmt = (
            update(User)
            .where(User.id == worker_id, User.current_load < User.max_capacity)
            .values(current_load=User.current_load + 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def decrement_load(self, worker_id: int) -> None:
        """Release one open issue from a worker; the load never goes below 0."""
        stmt = (
            update(User)
            .where(User.id == worker_id, User.current_load > 0)
            .values(current_load=User.current_load - 1)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 0:
            logger.warning("Load for worker %s already at zero", worker_id)

    def workers(self) -> List[User]:
        return (
            self.db.query(User)
            .populate_existing()
            .filter(User.role == Role.WORKER.value)
            .order_by(User.id)
            .all()
        )

    def least_loaded_worker(self, latitude: float, longitude: float) -> Optional[User]:
        """
        The ACTIVE worker with spare capacity and the lowest load ratio whose
        work area covers the given point. Workers without a work area cover
        the whole city.
        """
        eligible = []
        for worker in self.workers():
            if worker.status != EmployeeStatus.ACTIVE.value:
                continue
            capacity = worker.max_capacity or 0
            if capacity <= 0 or (worker.current_load or 0) >= capacity:
                continue
            if worker.work_latitude is not None and worker.work_longitude is not None:
                reach = (worker.work_radius_km or 0) * 1000.0
                if haversine_meters(latitude, longitude, worker.work_latitude, worker.work_longitude) > reach:
                    continue
            eligible.append(worker)
        if not eligible:
            return None
        return min(eligible, key=lambda w: ((w.current_load or 0) / w.max_capacity, w.current_load or 0, w.id))
