"""
Issue lifecycle state machine.

`TRANSITIONS` is the single table of legal (from, to) pairs with the roles
allowed to request each one. Every status write goes through
`IssueLifecycle.apply`, which checks, in order:

1. the issue exists (`NotFound`);
2. the caller's expected status is still current (`ConcurrencyConflict`);
3. a worker or contractor acting on someone else's assignment (`Forbidden`);
4. the pair is in the table (`InvalidTransition`);
5. the actor's role is allowed (`Forbidden`);
6. the assignee-only rule (`Forbidden`);
7. the transition's precondition (`PreconditionFailed`);

and then writes the status with a compare-and-set update, so two requests
carrying the same expected status can never both succeed.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session

from CiviReportAPI.constants import (
    ASSIGNABLE_ROLES,
    AWAITING_INSPECTION,
    TERMINAL_STATUSES,
    EmployeeStatus,
    IssueStatus,
    LifecycleEvent,
    Role,
    VerificationStatus,
    WorkUpdateType,
)
from CiviReportAPI.errors import (
    ConcurrencyConflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
)
from CiviReportAPI.models import Bid, Issue, User, WorkUpdate
from CiviReportAPI.notification_service import NotificationDispatcher, PendingNotification
from CiviReportAPI.repositories import BidRepository, IssueRepository, WorkerCapacityTracker
from CiviReportAPI.utils import utcnow

logger = logging.getLogger(__name__)

AUTO_BID_REJECTION_NOTE = "Issue was rejected before a bid was accepted."
AWARD_WITHDRAWN_NOTE = "The award was withdrawn and the issue reopened for bidding."


@dataclass(frozen=True)
class TransitionRule:
    from_status: IssueStatus
    to_status: IssueStatus
    roles: FrozenSet[Role]
    assignee_only: bool = False
    bid_only: bool = False


def _rule(from_status, to_status, *roles, **options) -> TransitionRule:
    return TransitionRule(from_status, to_status, frozenset(roles), **options)


_S = IssueStatus

_RULES = [
    _rule(_S.REPORTED, _S.ASSIGNED, Role.ADMIN),
    _rule(_S.REPORTED, _S.REJECTED, Role.ADMIN),
    _rule(_S.REPORTED, _S.OPEN_FOR_BIDDING, Role.ADMIN),
    _rule(_S.ASSIGNED, _S.OPEN_FOR_BIDDING, Role.ADMIN),
    _rule(_S.ASSIGNED, _S.REJECTED, Role.ADMIN),
    _rule(_S.OPEN_FOR_BIDDING, _S.ASSIGNED, Role.ADMIN, bid_only=True),
    _rule(_S.OPEN_FOR_BIDDING, _S.REJECTED, Role.ADMIN),
    _rule(_S.ASSIGNED, _S.IN_PROGRESS, Role.WORKER, Role.CONTRACTOR, assignee_only=True),
    _rule(_S.IN_PROGRESS, _S.PENDING_INSPECTION, Role.WORKER, Role.CONTRACTOR, assignee_only=True),
    _rule(_S.IN_PROGRESS, _S.COMPLETED, Role.WORKER, Role.CONTRACTOR, assignee_only=True),
]
for _awaiting in (_S.PENDING_INSPECTION, _S.COMPLETED):
    _RULES += [
        _rule(_awaiting, _S.RESOLVED, Role.INSPECTOR),
        _rule(_awaiting, _S.IN_PROGRESS, Role.INSPECTOR),
        _rule(_awaiting, _S.REJECTED, Role.INSPECTOR),
    ]

TRANSITIONS: Dict[Tuple[IssueStatus, IssueStatus], TransitionRule] = {
    (r.from_status, r.to_status): r for r in _RULES
}
"""dict: (from_status, to_status) -> TransitionRule."""


@dataclass
class TransitionRequest:
    expected_status: IssueStatus
    new_status: IssueStatus
    assigned_to_id: Optional[int] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    work_update_id: Optional[int] = None


def actor_role(actor: User) -> Role:
    try:
        return Role(str(actor.role).upper())
    except ValueError:
        raise Forbidden(f"Unknown role {actor.role!r}", rule="role_not_permitted")


def _blank(value: Optional[str]) -> bool:
    return not (value or "").strip()


def _acting_on_foreign_assignment(issue: Issue, actor: User, role: Role) -> bool:
    return (
        role in ASSIGNABLE_ROLES
        and issue.assigned_to_id is not None
        and issue.assigned_to_id != actor.id
    )


def list_available_transitions(issue: Issue, actor: User) -> List[IssueStatus]:
    """
    Targets the actor may request from the issue's current status.

    Only role and assignee checks are applied; preconditions are evaluated
    when the transition is requested. Bid-only transitions are omitted.
    """
    try:
        role = actor_role(actor)
    except Forbidden:
        return []
    current = IssueStatus(issue.status)
    if _acting_on_foreign_assignment(issue, actor, role):
        return []
    targets = []
    for (from_status, to_status), rule in TRANSITIONS.items():
        if from_status != current or rule.bid_only or role not in rule.roles:
            continue
        if rule.assignee_only and issue.assigned_to_id != actor.id:
            continue
        targets.append(to_status)
    return targets


class IssueLifecycle:
    def __init__(self, db: Session, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.issues = IssueRepository(db)
        self.bids = BidRepository(db)
        self.capacity = WorkerCapacityTracker(db)
        self.notifier = notifier or NotificationDispatcher(db)

    # -- public operations -------------------------------------------------

    def transition(self, issue_id: int, actor: User, request: TransitionRequest) -> Issue:
        """
        Validate and apply one transition in its own transaction.

        Args:
            issue_id (int): The issue to move.
            actor (User): The authenticated actor.
            request (TransitionRequest): Expected and requested status plus
                the data the precondition needs.

        Returns:
            Issue: The issue as persisted after the transition.

        Raises:
            NotFound, ConcurrencyConflict, InvalidTransition, Forbidden,
            PreconditionFailed: See the module docstring for the order.
        """
        try:
            issue = self.issues.require(issue_id)
            events = self.apply(issue, actor, request)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.notifier.dispatch(events)
        return self.issues.require(issue_id)

    def run_with_retry(self, issue_id: int, unit: Callable):
        """
        Run `unit(issue)` in a transaction, retrying once on a stale status.

        `unit` receives a freshly read issue and returns `(result, events)`;
        it must build its transition requests from that issue's status.
        """
        for attempt in range(2):
            try:
                issue = self.issues.require(issue_id)
                result, events = unit(issue)
                self.db.commit()
            except ConcurrencyConflict:
                self.db.rollback()
                if attempt:
                    raise
                logger.info("Issue %s changed concurrently; retrying once", issue_id)
                continue
            except Exception:
                self.db.rollback()
                raise
            self.notifier.dispatch(events)
            return result

    def auto_assign(self, issue_id: int, actor: User) -> Issue:
        """
        Assign a REPORTED issue to the least-loaded eligible worker.

        Falls back to opening the issue for bidding when no worker qualifies
        and the issue is contractor-eligible.

        Raises:
            Forbidden: If the actor is not an administrator.
            PreconditionFailed: If neither a worker nor bidding is possible.
        """
        if actor_role(actor) != Role.ADMIN:
            raise Forbidden("Only administrators can auto-assign issues", rule="role_not_permitted")

        def unit(issue):
            current = IssueStatus(issue.status)
            if current != IssueStatus.REPORTED:
                raise InvalidTransition(
                    "Only REPORTED issues can be auto-assigned",
                    rule="transition_not_allowed",
                    from_status=current,
                    to_status=IssueStatus.ASSIGNED,
                )
            worker = self.capacity.least_loaded_worker(issue.latitude, issue.longitude)
            if worker is not None:
                request = TransitionRequest(current, IssueStatus.ASSIGNED, assigned_to_id=worker.id)
            elif issue.contractor_eligible:
                request = TransitionRequest(current, IssueStatus.OPEN_FOR_BIDDING)
            else:
                raise PreconditionFailed(
                    "No active worker with spare capacity covers this issue",
                    rule="worker_available",
                    issue_id=issue.id,
                )
            return issue.id, self.apply(issue, actor, request)

        self.run_with_retry(issue_id, unit)
        return self.issues.require(issue_id)

    # -- core --------------------------------------------------------------

    def apply(
        self,
        issue: Issue,
        actor: User,
        request: TransitionRequest,
        accepted_bid: Optional[Bid] = None,
    ) -> List[PendingNotification]:
        """
        Check and write one transition without committing.

        Returns:
            list[PendingNotification]: Notifications to dispatch after commit.
        """
        current = IssueStatus(issue.status)
        target = request.new_status
        if current != request.expected_status:
            raise ConcurrencyConflict(
                f"Issue {issue.id} is {current.value}, not {request.expected_status.value}",
                rule="stale_expected_status",
                issue_id=issue.id,
                expected_status=request.expected_status,
                current_status=current,
            )

        role = actor_role(actor)
        if _acting_on_foreign_assignment(issue, actor, role):
            raise Forbidden("Only the assignee can act on this issue", rule="not_assignee", issue_id=issue.id)

        rule = TRANSITIONS.get((current, target))
        if rule is None:
            raise InvalidTransition(
                f"Cannot move an issue from {current.value} to {target.value}",
                rule="transition_not_allowed",
                from_status=current,
                to_status=target,
            )
        if role not in rule.roles:
            raise Forbidden(
                f"Role {role.value} cannot move an issue from {current.value} to {target.value}",
                rule="role_not_permitted",
                from_status=current,
                to_status=target,
            )
        if rule.assignee_only and issue.assigned_to_id != actor.id:
            raise Forbidden("Only the assignee can act on this issue", rule="not_assignee", issue_id=issue.id)

        patch, note, after, events = self._preconditions(issue, actor, rule, request, accepted_bid)

        if not self.issues.compare_and_transition(issue.id, current, target, patch):
            raise ConcurrencyConflict(
                f"Issue {issue.id} changed while the transition was being applied",
                rule="stale_expected_status",
                issue_id=issue.id,
                expected_status=current,
                current_status=self.issues.current_status(issue.id),
            )
        self.issues.record_change(issue.id, current, target, actor, note)
        for step in after:
            step()
        logger.info("Issue %s: %s -> %s by user %s", issue.id, current.value, target.value, actor.id)
        return events

    # -- preconditions and side effects ------------------------------------

    def _preconditions(self, issue, actor, rule, request, accepted_bid):
        now = utcnow()
        current, target = rule.from_status, rule.to_status
        patch: Dict = {}
        note = (request.reason or request.notes or None)
        after: List[Callable] = []
        events: List[PendingNotification] = []
        payload = {"issue_id": issue.id, "title": issue.title, "from_status": current.value, "to_status": target.value}

        if target == IssueStatus.ASSIGNED:
            assignee = self._resolve_assignee(issue, rule, request, accepted_bid)
            patch.update(assigned_to_id=assignee.id, assigned_at=now)
            if assignee.role == Role.WORKER.value:
                after.append(lambda: self._claim_capacity(assignee))
            events.append(PendingNotification(assignee.id, LifecycleEvent.ISSUE_ASSIGNED, payload))

        elif target == IssueStatus.OPEN_FOR_BIDDING:
            if not issue.contractor_eligible:
                raise PreconditionFailed(
                    "Issue is not eligible for contractor bidding",
                    rule="contractor_eligible",
                    issue_id=issue.id,
                )
            if issue.assigned_to_id is not None:
                patch.update(assigned_to_id=None, assigned_at=None)
                after.append(lambda: self._release(issue))
                after.append(lambda: self._withdraw_award(issue, actor, events))

        elif target == IssueStatus.IN_PROGRESS and current == IssueStatus.ASSIGNED:
            patch["started_at"] = now

        elif target in AWAITING_INSPECTION:
            self._terminal_update(issue, request, worker_id=actor.id, required=True)
            patch["completed_at"] = now

        elif current in AWAITING_INSPECTION:
            update = self._terminal_update(issue, request, required=target != IssueStatus.REJECTED)
            if target == IssueStatus.RESOLVED:
                patch.update(resolved_at=now, verification_notes=request.notes)
                after.append(lambda: self._verify(update, actor, VerificationStatus.APPROVED, request.notes))
            elif target == IssueStatus.IN_PROGRESS:
                if _blank(request.notes):
                    raise PreconditionFailed(
                        "Notes are required when sending work back",
                        rule="notes_required",
                        issue_id=issue.id,
                    )
                patch.update(verification_notes=request.notes, completed_at=None)
                after.append(lambda: self._verify(update, actor, VerificationStatus.REJECTED, request.notes))
            elif update is not None:
                after.append(lambda: self._verify(update, actor, VerificationStatus.REJECTED, request.reason))

        if target == IssueStatus.REJECTED:
            if _blank(request.reason):
                raise PreconditionFailed(
                    "A rejection reason is required",
                    rule="reason_required",
                    issue_id=issue.id,
                )
            patch.update(rejected_at=now, rejection_reason=request.reason.strip())
            if current == IssueStatus.OPEN_FOR_BIDDING:
                after.append(lambda: self.bids.reject_pending(issue.id, actor.id, AUTO_BID_REJECTION_NOTE))

        if target in TERMINAL_STATUSES:
            if issue.assigned_to_id is not None:
                after.append(lambda: self._release(issue))
            if target == IssueStatus.REJECTED:
                payload["reason"] = request.reason
                events.append(PendingNotification(issue.reporter_id, LifecycleEvent.ISSUE_REJECTED, payload))
            else:
                payload["notes"] = request.notes
                events.append(PendingNotification(issue.reporter_id, LifecycleEvent.ISSUE_RESOLVED, payload))

        return patch, note, after, events

    def _load_user(self, user_id: int) -> Optional[User]:
        return self.db.query(User).populate_existing().filter(User.id == user_id).first()

    def _resolve_assignee(self, issue, rule, request, accepted_bid) -> User:
        if accepted_bid is not None:
            contractor = self._load_user(accepted_bid.contractor_id)
            if contractor is None:
                raise PreconditionFailed("Bid contractor no longer exists", rule="assignee_unknown")
            return contractor
        if rule.bid_only:
            raise PreconditionFailed(
                "Issues open for bidding are assigned by accepting a bid",
                rule="accepted_bid_required",
                issue_id=issue.id,
            )
        if not request.assigned_to_id:
            raise PreconditionFailed("An assignee is required", rule="assignee_required", issue_id=issue.id)

        assignee = self._load_user(request.assigned_to_id)
        if assignee is None:
            raise PreconditionFailed(
                f"User {request.assigned_to_id} does not exist",
                rule="assignee_unknown",
                assigned_to_id=request.assigned_to_id,
            )
        if assignee.role not in {r.value for r in ASSIGNABLE_ROLES}:
            raise PreconditionFailed(
                f"Users with role {assignee.role} cannot be assigned issues",
                rule="assignee_role",
                assigned_to_id=assignee.id,
            )
        if assignee.role == Role.WORKER.value:
            if assignee.status != EmployeeStatus.ACTIVE.value:
                raise PreconditionFailed("Worker is not active", rule="worker_active", assigned_to_id=assignee.id)
            if (assignee.current_load or 0) >= (assignee.max_capacity or 0):
                raise PreconditionFailed("Worker is at capacity", rule="worker_capacity", assigned_to_id=assignee.id)
        elif self.bids.accepted_for(issue.id, assignee.id) is None:
            raise PreconditionFailed(
                "Contractors are assigned through an accepted bid",
                rule="accepted_bid_required",
                assigned_to_id=assignee.id,
            )
        return assignee

    def _terminal_update(self, issue, request, worker_id=None, required=True) -> Optional[WorkUpdate]:
        if request.work_update_id is not None:
            update = self.db.query(WorkUpdate).filter(WorkUpdate.id == request.work_update_id).first()
            if update is None:
                raise NotFound(f"Work update {request.work_update_id} not found", work_update_id=request.work_update_id)
            pending_terminal = (
                update.issue_id == issue.id
                and update.update_type == WorkUpdateType.COMPLETED.value
                and update.verification_status == VerificationStatus.PENDING.value
                and (worker_id is None or update.worker_id == worker_id)
            )
            if not pending_terminal:
                raise PreconditionFailed(
                    "Work update is not a completion awaiting verification for this issue",
                    rule="terminal_work_update",
                    work_update_id=update.id,
                )
            return update
        update = self.issues.pending_terminal_update(issue.id, worker_id)
        if update is None and required:
            raise PreconditionFailed(
                "No completed work update is awaiting verification",
                rule="terminal_work_update",
                issue_id=issue.id,
            )
        return update

    def _verify(self, update: WorkUpdate, inspector: User, status: VerificationStatus, notes: Optional[str]) -> None:
        update.verification_status = status.value
        update.verified_by_id = inspector.id
        update.inspector_notes = notes
        update.verified_at = utcnow()

    def _claim_capacity(self, worker: User) -> None:
        if not self.capacity.increment_load(worker.id):
            raise PreconditionFailed("Worker is at capacity", rule="worker_capacity", assigned_to_id=worker.id)

    def _release(self, issue: Issue) -> None:
        assignee = self._load_user(issue.assigned_to_id)
        if assignee is not None and assignee.role == Role.WORKER.value:
            self.capacity.decrement_load(assignee.id)

    def _withdraw_award(self, issue: Issue, actor: User, events: List[PendingNotification]) -> None:
        for bid in self.bids.withdraw_accepted(issue.id, actor.id, AWARD_WITHDRAWN_NOTE):
            events.append(PendingNotification(
                bid.contractor_id,
                LifecycleEvent.BID_REJECTED,
                {"issue_id": issue.id, "title": issue.title, "bid_id": bid.id, "notes": AWARD_WITHDRAWN_NOTE},
            ))
