import json

from CiviReportAPI.constants import LifecycleEvent, Role
from CiviReportAPI.email_service import build_notification_html, send_notification_email
from CiviReportAPI.models import Notification
from CiviReportAPI.notification_service import NotificationDispatcher, PendingNotification
from CiviReportAPI.tests.conftest import create_user


class RecordingMailer:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def __call__(self, **kwargs):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(kwargs)
        return True


def test_notify_stores_row_and_emails_recipient(db_session):
    worker = create_user(db_session, Role.WORKER)
    mailer = RecordingMailer()

    notif = NotificationDispatcher(db_session, send_email=mailer).notify(
        worker.id, LifecycleEvent.ISSUE_ASSIGNED, {"issue_id": 42, "title": "Pothole"}
    )

    assert notif.title == "Issue #42 assigned to you"
    assert notif.body == "Issue: Pothole"
    assert json.loads(notif.payload)["issue_id"] == 42
    assert mailer.sent == [{
        "to_email": worker.email,
        "subject": "Issue #42 assigned to you",
        "body": "Issue: Pothole",
        "issue_id": 42,
        "event_type": LifecycleEvent.ISSUE_ASSIGNED,
    }]


def test_email_failure_keeps_the_stored_notification(db_session):
    citizen = create_user(db_session, Role.CITIZEN)

    notif = NotificationDispatcher(db_session, send_email=RecordingMailer(fail=True)).notify(
        citizen.id, LifecycleEvent.ISSUE_REJECTED, {"issue_id": 7, "reason": "Not city property"}
    )

    stored = db_session.query(Notification).filter(Notification.id == notif.id).one()
    assert stored.body == "Reason: Not city property"
    assert stored.read is False


def test_dispatch_skips_missing_recipients(db_session):
    contractor = create_user(db_session, Role.CONTRACTOR)
    mailer = RecordingMailer()

    NotificationDispatcher(db_session, send_email=mailer).dispatch([
        PendingNotification(None, LifecycleEvent.ISSUE_RESOLVED, {"issue_id": 1}),
        PendingNotification(contractor.id, LifecycleEvent.BID_ACCEPTED, {"issue_id": 3, "amount": 5000}),
    ])

    assert [m["to_email"] for m in mailer.sent] == [contractor.email]
    assert "Accepted amount: 5000" in mailer.sent[0]["body"]


def test_notification_html_escapes_and_links_by_event():
    rendered = build_notification_html(
        "Bid <accepted>", "Issue: Main & 5th\nNotes: go", issue_id=9, event_type=LifecycleEvent.BID_ACCEPTED
    )

    assert "Bid &lt;accepted&gt;" in rendered
    assert "<p style=\"margin:0 0 8px;\">Issue: Main &amp; 5th</p>" in rendered
    assert "/bids?issue=9" in rendered
    assert "View your bids" in rendered


def test_default_link_points_at_issue():
    rendered = build_notification_html("Resolved", "", issue_id=5, event_type=LifecycleEvent.ISSUE_RESOLVED)
    assert "/issues/5" in rendered
    assert "View issue #5" in rendered


def test_send_is_skipped_when_email_disabled():
    # conftest sets EMAIL_ENABLED=false before the app is imported
    assert send_notification_email("someone@example.com", "Hi", "Body", issue_id=1) is False
