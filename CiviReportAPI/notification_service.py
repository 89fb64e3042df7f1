"""
Lifecycle event notifications.

`notify` is fire-and-forget: it stores an in-app Notification row and emails
the recipient when email is configured. Failures are logged and never reach
the caller, so a notification problem cannot undo a committed transition.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.orm import Session

from CiviReportAPI.constants import LifecycleEvent
from CiviReportAPI.email_service import send_notification_email
from CiviReportAPI.models import Notification, User

logger = logging.getLogger(__name__)

_TITLES = {
    LifecycleEvent.ISSUE_ASSIGNED: "Issue #{issue_id} assigned to you",
    LifecycleEvent.ISSUE_RESOLVED: "Your issue #{issue_id} was resolved",
    LifecycleEvent.ISSUE_REJECTED: "Your issue #{issue_id} was rejected",
    LifecycleEvent.BID_ACCEPTED: "Your bid on issue #{issue_id} was accepted",
    LifecycleEvent.BID_REJECTED: "Your bid on issue #{issue_id} was rejected",
}


@dataclass
class PendingNotification:
    """A notification collected during a transaction and sent after commit."""

    user_id: int
    event_type: LifecycleEvent
    payload: Dict = field(default_factory=dict)


def _body(event_type: LifecycleEvent, payload: Dict) -> str:
    title = payload.get("title")
    lines = [f"Issue: {title}"] if title else []
    for key in ("reason", "notes"):
        if payload.get(key):
            lines.append(f"{key.capitalize()}: {payload[key]}")
    if event_type == LifecycleEvent.BID_ACCEPTED and payload.get("amount") is not None:
        lines.append(f"Accepted amount: {payload['amount']}")
    return "\n".join(lines)


class NotificationDispatcher:
    def __init__(self, db: Session, send_email=send_notification_email):
        self.db = db
        self.send_email = send_email

    def notify(self, user_id: Optional[int], event_type: LifecycleEvent, payload: Optional[Dict] = None) -> Optional[Notification]:
        if not user_id:
            return None
        payload = dict(payload or {})
        issue_id = payload.get("issue_id")
        title = _TITLES.get(event_type, "CiviReport update").format(issue_id=issue_id)
        body = _body(event_type, payload)
        try:
            notif = Notification(
                user_id=user_id,
                event_type=event_type.value,
                title=title,
                body=body,
                issue_id=issue_id,
                payload=json.dumps(payload, default=str),
                read=False,
            )
            self.db.add(notif)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Failed to store %s notification for user %s", event_type.value, user_id)
            return None

        try:
            user = self.db.query(User).filter(User.id == user_id).first()
            if user and user.email:
                self.send_email(
                    to_email=user.email, subject=title, body=body, issue_id=issue_id, event_type=event_type
                )
        except Exception:
            logger.exception("Failed to email %s notification to user %s", event_type.value, user_id)
        return notif

    def dispatch(self, pending) -> None:
        for item in pending:
            self.notify(item.user_id, item.event_type, item.payload)
