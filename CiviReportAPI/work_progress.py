"""
Field progress updates and inspector verification.

A work update can drive its issue forward: STARTED (or IN_PROGRESS) on an
ASSIGNED issue starts work, COMPLETED on an IN_PROGRESS issue submits it for
inspection. Verification settles the terminal update and moves the issue in
the same transaction.
"""

import json
import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from CiviReportAPI.constants import (
    IssueStatus,
    Role,
    VerificationStatus,
    WorkUpdateType,
)
from CiviReportAPI.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from CiviReportAPI.lifecycle import IssueLifecycle, TransitionRequest, actor_role
from CiviReportAPI.models import User, WorkUpdate
from CiviReportAPI.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

_STARTS_WORK = frozenset({WorkUpdateType.STARTED, WorkUpdateType.IN_PROGRESS})
_VERDICT_TARGETS = {
    VerificationStatus.APPROVED: IssueStatus.RESOLVED,
    VerificationStatus.REJECTED: IssueStatus.IN_PROGRESS,
}


def _validate(progress_percentage: int, hours_worked: float, materials) -> None:
    if progress_percentage is None or not 0 <= progress_percentage <= 100:
        raise ValidationError("Progress must be between 0 and 100", rule="progress_range")
    if hours_worked is None or hours_worked < 0:
        raise ValidationError("Hours worked cannot be negative", rule="hours_non_negative")
    for item in materials or []:
        if not isinstance(item, dict) or not str(item.get("name") or "").strip():
            raise ValidationError("Each material needs a name", rule="material_name")


class WorkProgress:
    def __init__(self, db: Session, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.lifecycle = IssueLifecycle(db, notifier)

    def submit(
        self,
        actor: User,
        issue_id: int,
        update_type: WorkUpdateType,
        description: str,
        progress_percentage: int = 0,
        hours_worked: float = 0.0,
        materials: Optional[List[dict]] = None,
        photo_keys: Optional[Iterable[str]] = None,
    ) -> WorkUpdate:
        """
        Record a work update from the issue's assignee.

        Args:
            actor (User): The submitting worker or contractor.
            issue_id (int): The issue worked on.
            update_type (WorkUpdateType): Kind of update.
            description (str): What was done.
            progress_percentage (int): 0-100.
            hours_worked (float): Hours spent, >= 0.
            materials (list[dict]): Items of {name, quantity, unit}.
            photo_keys (Iterable[str]): Blob keys of already stored photos.

        Returns:
            WorkUpdate: The stored update.

        Raises:
            ValidationError: Out-of-range numbers or unnamed materials.
            NotFound: Unknown issue.
            Forbidden: The actor is not the assignee.
            PreconditionFailed: The issue is not being worked on, or a
                completion was submitted before work started.
        """
        if not (description or "").strip():
            raise ValidationError("Description is required", rule="description_required")
        _validate(progress_percentage, hours_worked, materials)
        if actor_role(actor) not in (Role.WORKER, Role.CONTRACTOR):
            raise Forbidden("Only workers and contractors submit work updates", rule="role_not_permitted")

        def unit(issue):
            if issue.assigned_to_id != actor.id:
                raise Forbidden("Only the assignee can submit work updates", rule="not_assignee", issue_id=issue.id)
            current = IssueStatus(issue.status)
            if current not in (IssueStatus.ASSIGNED, IssueStatus.IN_PROGRESS):
                raise PreconditionFailed(
                    f"Work updates are not accepted while the issue is {current.value}",
                    rule="issue_in_work",
                    issue_id=issue.id,
                    current_status=current,
                )
            if update_type == WorkUpdateType.COMPLETED and current == IssueStatus.ASSIGNED:
                raise PreconditionFailed(
                    "Work must be started before it can be completed",
                    rule="work_not_started",
                    issue_id=issue.id,
                )

            update = WorkUpdate(
                issue_id=issue.id,
                worker_id=actor.id,
                update_type=update_type.value,
                description=description.strip(),
                progress_percentage=100 if update_type == WorkUpdateType.COMPLETED else progress_percentage,
                hours_worked=hours_worked,
                materials=json.dumps(materials or []),
                photos=json.dumps(list(photo_keys or [])),
                verification_status=VerificationStatus.PENDING.value,
            )
            self.db.add(update)
            self.db.flush()

            events = []
            if update_type in _STARTS_WORK and current == IssueStatus.ASSIGNED:
                request = TransitionRequest(current, IssueStatus.IN_PROGRESS)
                events = self.lifecycle.apply(issue, actor, request)
            elif update_type == WorkUpdateType.COMPLETED:
                target = (
                    IssueStatus.COMPLETED
                    if actor_role(actor) == Role.CONTRACTOR
                    else IssueStatus.PENDING_INSPECTION
                )
                request = TransitionRequest(current, target, work_update_id=update.id)
                events = self.lifecycle.apply(issue, actor, request)
            return update.id, events

        update_id = self.lifecycle.run_with_retry(issue_id, unit)
        logger.info("Work update %s (%s) recorded on issue %s", update_id, update_type.value, issue_id)
        return self.get(update_id)

    def verify(self, update_id: int, inspector: User, status: VerificationStatus, notes: Optional[str] = None) -> WorkUpdate:
        """
        Approve or reject a completion.

        APPROVED resolves the issue; REJECTED (notes required) sends it back
        to IN_PROGRESS.
        """
        update = self.get(update_id)
        if actor_role(inspector) != Role.INSPECTOR:
            raise Forbidden("Only inspectors verify work", rule="role_not_permitted")
        target = _VERDICT_TARGETS.get(status)
        if target is None or update.verification_status != VerificationStatus.PENDING.value:
            raise InvalidTransition(
                f"Cannot move a work update from {update.verification_status} to {status.value}",
                rule="verification_not_allowed",
                from_status=update.verification_status,
                to_status=status,
            )
        if update.update_type != WorkUpdateType.COMPLETED.value:
            raise PreconditionFailed(
                "Only completion updates are verified",
                rule="terminal_work_update",
                work_update_id=update.id,
            )

        def unit(issue):
            request = TransitionRequest(
                expected_status=IssueStatus(issue.status),
                new_status=target,
                notes=notes,
                work_update_id=update.id,
            )
            return update.id, self.lifecycle.apply(issue, inspector, request)

        self.lifecycle.run_with_retry(update.issue_id, unit)
        return self.get(update_id)

    def get(self, update_id: int) -> WorkUpdate:
        update = self.db.query(WorkUpdate).populate_existing().filter(WorkUpdate.id == update_id).first()
        if update is None:
            raise NotFound(f"Work update {update_id} not found", work_update_id=update_id)
        return update

    def list_for_issue(self, issue_id: int) -> List[WorkUpdate]:
        self.lifecycle.issues.require(issue_id)
        return (
            self.db.query(WorkUpdate)
            .filter(WorkUpdate.issue_id == issue_id)
            .order_by(WorkUpdate.created_at.desc(), WorkUpdate.id.desc())
            .all()
        )

    def pending_verifications(self) -> List[WorkUpdate]:
        return (
            self.db.query(WorkUpdate)
            .filter(
                WorkUpdate.update_type == WorkUpdateType.COMPLETED.value,
                WorkUpdate.verification_status == VerificationStatus.PENDING.value,
            )
            .order_by(WorkUpdate.created_at, WorkUpdate.id)
            .all()
        )
