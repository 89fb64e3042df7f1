"""
Outbound email for lifecycle notifications, sent through SendGrid.

Email is optional: with EMAIL_ENABLED off or no SENDGRID_API_KEY configured,
every send is skipped and reported as not delivered.
"""

import html
import logging
import os
from typing import Optional

from CiviReportAPI.constants import LifecycleEvent

SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
SENDGRID_FROM_EMAIL = os.getenv("SENDGRID_FROM_EMAIL", "no-reply@civireport.local")
EMAIL_ENABLED = os.getenv("EMAIL_ENABLED", "true").lower() in ("1", "true", "yes", "on")
FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000")

logger = logging.getLogger(__name__)

# Where each event's call to action points in the web app
_LINKS = {
    LifecycleEvent.ISSUE_ASSIGNED: ("/work/{issue_id}", "Open work order"),
    LifecycleEvent.BID_ACCEPTED: ("/bids?issue={issue_id}", "View your bids"),
    LifecycleEvent.BID_REJECTED: ("/bids?issue={issue_id}", "View your bids"),
}
_DEFAULT_LINK = ("/issues/{issue_id}", "View issue #{issue_id}")


def _should_send() -> bool:
    if not EMAIL_ENABLED:
        logger.info("Email sending disabled by EMAIL_ENABLED")
        return False
    if not SENDGRID_API_KEY:
        logger.warning("No SENDGRID_API_KEY configured; notification emails are not sent")
        return False
    return True


def _action_link(event_type: Optional[LifecycleEvent], issue_id: Optional[int]) -> str:
    if not (FRONTEND_BASE_URL and issue_id):
        return ""
    path, label = _LINKS.get(event_type, _DEFAULT_LINK)
    href = FRONTEND_BASE_URL.rstrip("/") + path.format(issue_id=issue_id)
    return f'<p><a href="{html.escape(href)}">{html.escape(label.format(issue_id=issue_id))}</a></p>'


def build_notification_html(
    subject: Optional[str],
    body: Optional[str],
    issue_id: Optional[int] = None,
    event_type: Optional[LifecycleEvent] = None,
) -> str:
    """Render a notification as HTML, one paragraph per body line."""
    safe_subject = html.escape(subject or "CiviReport update")
    paragraphs = "".join(
        f'<p style="margin:0 0 8px;">{html.escape(line)}</p>'
        for line in (body or "").splitlines()
        if line.strip()
    )
    return f"""
        <div style="font-family: Arial, sans-serif; color: #111;">
            <h2 style="margin:0 0 12px;">{safe_subject}</h2>
            {paragraphs}
            {_action_link(event_type, issue_id)}
            <hr style="margin:16px 0; border:none; border-top:1px solid #eee;" />
            <p style="font-size:12px; color:#666;">You receive this because you take part in a CiviReport issue.</p>
        </div>
    """


def send_notification_email(
    to_email: str,
    subject: str,
    body: str,
    issue_id: Optional[int] = None,
    event_type: Optional[LifecycleEvent] = None,
) -> bool:
    """
    Email a lifecycle notification.

    Returns:
        bool: True when SendGrid accepted the message, False if skipped or failed.
    """
    if not _should_send():
        return False
    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail

        message = Mail(
            from_email=SENDGRID_FROM_EMAIL,
            to_emails=to_email,
            subject=subject or "CiviReport update",
            plain_text_content=body or "",
            html_content=build_notification_html(subject, body, issue_id, event_type),
        )
        response = SendGridAPIClient(SENDGRID_API_KEY).send(message)
    except Exception:
        logger.exception("SendGrid rejected notification email for issue %s", issue_id)
        return False
    status_code = getattr(response, "status_code", 500)
    if not 200 <= status_code < 300:
        logger.warning("SendGrid returned %s for notification email on issue %s", status_code, issue_id)
        return False
    return True
