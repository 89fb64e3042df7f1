"""
Global constants for the CiviReportAPI.

Closed enumerations shared by the state machine, the detection pipeline and
every route. External spellings ('reported', 'In Progress', ...) are
translated here and nowhere else.
"""

import enum
import re


class IssueCategory(str, enum.Enum):
    ROADS = "ROADS"
    UTILITIES = "UTILITIES"
    PARKS = "PARKS"
    TRAFFIC = "TRAFFIC"
    SANITATION = "SANITATION"
    HEALTH = "HEALTH"
    OTHER = "OTHER"


class IssuePriority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IssueStatus(str, enum.Enum):
    REPORTED = "REPORTED"
    OPEN_FOR_BIDDING = "OPEN_FOR_BIDDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_INSPECTION = "PENDING_INSPECTION"
    COMPLETED = "COMPLETED"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"


TERMINAL_STATUSES = frozenset({IssueStatus.RESOLVED, IssueStatus.REJECTED})
"""frozenset[IssueStatus]: Statuses with no outgoing transitions."""

AWAITING_INSPECTION = frozenset({IssueStatus.PENDING_INSPECTION, IssueStatus.COMPLETED})
"""frozenset[IssueStatus]: Statuses in which an inspector verifies finished work."""


class Role(str, enum.Enum):
    CITIZEN = "CITIZEN"
    WORKER = "WORKER"
    INSPECTOR = "INSPECTOR"
    CONTRACTOR = "CONTRACTOR"
    ADMIN = "ADMIN"


ASSIGNABLE_ROLES = frozenset({Role.WORKER, Role.CONTRACTOR})


class EmployeeStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ON_LEAVE = "ON_LEAVE"


class BidStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class WorkUpdateType(str, enum.Enum):
    STARTED = "STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"


class VerificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class QualityReason(str, enum.Enum):
    BLURRY = "BLURRY"
    TOO_DARK = "TOO_DARK"
    NON_SUBSTANTIVE = "NON_SUBSTANTIVE"
    LOW_RESOLUTION = "LOW_RESOLUTION"


class LifecycleEvent(str, enum.Enum):
    ISSUE_ASSIGNED = "issue_assigned"
    ISSUE_RESOLVED = "issue_resolved"
    ISSUE_REJECTED = "issue_rejected"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"


# Spellings seen in older clients that do not map by name alone
_LEGACY_STATUS_ALIASES = {
    "CATEGORIZED": IssueStatus.REPORTED,
    "OPEN": IssueStatus.REPORTED,
    "BIDDING": IssueStatus.OPEN_FOR_BIDDING,
    "PENDING_VERIFICATION": IssueStatus.PENDING_INSPECTION,
    "CLOSED": IssueStatus.RESOLVED,
}


def parse_status(value) -> IssueStatus:
    """
    Translate an external status spelling into an `IssueStatus`.

    Accepts any case and '-' or ' ' as word separators, e.g. 'reported',
    'In Progress', 'in-progress'.

    Raises:
        ValueError: If the value does not name a known status.
    """
    if isinstance(value, IssueStatus):
        return value
    key = re.sub(r"[\s\-]+", "_", str(value or "").strip()).upper()
    if key in IssueStatus.__members__:
        return IssueStatus[key]
    if key in _LEGACY_STATUS_ALIASES:
        return _LEGACY_STATUS_ALIASES[key]
    raise ValueError(f"Unknown issue status: {value!r}")
