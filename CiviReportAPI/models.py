import json

from sqlalchemy import Column, Integer, String, Boolean, Float, DateTime, ForeignKey, Text, BigInteger, Index, UniqueConstraint, func, text
from sqlalchemy.orm import declarative_base, relationship

from CiviReportAPI.constants import (
    BidStatus,
    EmployeeStatus,
    IssuePriority,
    IssueStatus,
    Role,
    VerificationStatus,
)
from CiviReportAPI.utils import utcnow


Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigId = BigInteger().with_variant(Integer, "sqlite")


# Users
class User(Base):
    """
    Local projection of an externally authenticated actor.

    Workers carry capacity and work-area fields used for assignment.

    Attributes:
        id (int): Primary key (matches the `sub` claim of the bearer token).
        email (str): Email address (unique).
        name (str): Display name.
        phone (str): Phone number.
        role (str): One of `Role`.
        status (str): One of `EmployeeStatus`; only ACTIVE staff are auto-assigned.
        current_load (int): Number of open issues assigned to the worker.
        max_capacity (int): Maximum concurrent assigned issues.
        work_latitude (float): Center of the worker's service area.
        work_longitude (float): Center of the worker's service area.
        work_radius_km (float): Radius of the worker's service area.
        created_at (datetime): Creation timestamp.
        updated_at (datetime): Update timestamp.
    """
    __tablename__ = "users"

    id = Column(BigId, primary_key=True, index=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String)
    phone = Column(String)
    role = Column(String, nullable=False, default=Role.CITIZEN.value)
    status = Column(String, nullable=False, default=EmployeeStatus.ACTIVE.value)
    current_load = Column(Integer, nullable=False, default=0)
    max_capacity = Column(Integer, nullable=False, default=10)
    work_latitude = Column(Float)
    work_longitude = Column(Float)
    work_radius_km = Column(Float, default=5.0)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


# Issues
class Issue(Base):
    """
    A civic issue reported by a citizen.

    `status` is only ever written through the lifecycle compare-and-set
    update; see `CiviReportAPI.lifecycle`.

    Attributes:
        id (int): Primary key.
        title (str): Short title.
        description (str): Free-text description.
        category (str): One of `IssueCategory`.
        priority (str): One of `IssuePriority`.
        latitude (float): Report latitude.
        longitude (float): Report longitude.
        address (str): Human-readable address.
        reporter_id (int): Foreign key to the reporting User.
        status (str): One of `IssueStatus`.
        assigned_to_id (int): Foreign key to the assigned worker or contractor.
        contractor_eligible (bool): Whether the issue may be opened for bidding.
        upvotes (int): Number of upvotes.
        verification_notes (str): Latest inspector notes.
        rejection_reason (str): Reason recorded on rejection.
        assigned_at (datetime): Time of the latest assignment.
        started_at (datetime): Time work started.
        completed_at (datetime): Time work was submitted for inspection.
        resolved_at (datetime): Time the issue was resolved.
        rejected_at (datetime): Time the issue was rejected.
        created_at (datetime): Creation timestamp.
        updated_at (datetime): Update timestamp.
    """
    __tablename__ = "issues"

    id = Column(BigId, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String, nullable=False)
    priority = Column(String, nullable=False, default=IssuePriority.MEDIUM.value)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String)
    reporter_id = Column(BigInteger, ForeignKey('users.id'), nullable=False)
    status = Column(String, nullable=False, default=IssueStatus.REPORTED.value, index=True)
    assigned_to_id = Column(BigInteger, ForeignKey('users.id'))
    contractor_eligible = Column(Boolean, nullable=False, default=False)
    upvotes = Column(Integer, nullable=False, default=0)
    verification_notes = Column(Text)
    rejection_reason = Column(Text)
    assigned_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    resolved_at = Column(DateTime)
    rejected_at = Column(DateTime)
    # Python-side default so candidate-window comparisons use one format
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    reporter = relationship("User", foreign_keys=[reporter_id])
    assignee = relationship("User", foreign_keys=[assigned_to_id])
    photos = relationship("IssuePhoto", back_populates="issue", order_by="IssuePhoto.position", cascade="all, delete-orphan")
    comments = relationship("IssueComment", back_populates="issue", order_by="IssueComment.id", cascade="all, delete-orphan")
    status_changes = relationship("IssueStatusChange", back_populates="issue", order_by="IssueStatusChange.id")
    bids = relationship("Bid", back_populates="issue")
    work_updates = relationship("WorkUpdate", back_populates="issue", order_by="WorkUpdate.id")

    __table_args__ = (
        Index('ix_issues_category_created_at', 'category', 'created_at'),
        Index('ix_issues_lat_lon', 'latitude', 'longitude'),
    )


# Issue photos and their fingerprints
class IssuePhoto(Base):
    """
    A photo attached to an issue, with the fingerprint computed at upload.

    Attributes:
        id (int): Primary key.
        issue_id (int): Foreign key to the Issue table.
        position (int): Order of the photo within the issue (0-4).
        blob_key (str): Blob store key; the photo reference.
        filename (str): Normalized filename.
        content_type (str): MIME type as stored.
        byte_size (int): Stored size in bytes.
        width (int): Pixel width, when decodable.
        height (int): Pixel height, when decodable.
        a_hash (str): 64-bit average hash as 16 hex chars.
        d_hash (str): 64-bit difference hash as 16 hex chars.
        md5 (str): MD5 of the stored bytes.
        created_at (datetime): Creation timestamp.
    """
    __tablename__ = "issue_photos"

    id = Column(BigId, primary_key=True, index=True)
    issue_id = Column(BigInteger, ForeignKey('issues.id'), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    blob_key = Column(String, nullable=False)
    filename = Column(String)
    content_type = Column(String)
    byte_size = Column(BigInteger)
    width = Column(Integer)
    height = Column(Integer)
    a_hash = Column(String(16))
    d_hash = Column(String(16))
    md5 = Column(String(32), index=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    issue = relationship("Issue", back_populates="photos")


class IssueComment(Base):
    __tablename__ = "issue_comments"

    id = Column(BigId, primary_key=True, index=True)
    issue_id = Column(BigInteger, ForeignKey('issues.id'), nullable=False, index=True)
    user_id = Column(BigInteger, ForeignKey('users.id'), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    issue = relationship("Issue", back_populates="comments")
    user = relationship("User")


class IssueUpvote(Base):
    __tablename__ = "issue_upvotes"

    id = Column(BigId, primary_key=True, index=True)
    issue_id = Column(BigInteger, ForeignKey('issues.id'), nullable=False)
    user_id = Column(BigInteger, ForeignKey('users.id'), nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('issue_id', 'user_id', name='uq_issue_upvotes_issue_user'),
    )


# Append-only transition history
class IssueStatusChange(Base):
    """
    One applied lifecycle transition.

    Attributes:
        id (int): Primary key.
        issue_id (int): Foreign key to the Issue table.
        from_status (str): Status before the transition (None for creation).
        to_status (str): Status after the transition.
        actor_id (int): Foreign key to the acting User.
        actor_role (str): Role the actor acted under.
        note (str): Reason or notes supplied with the transition.
        created_at (datetime): When the transition was applied.
    """
    __tablename__ = "issue_status_changes"

    id = Column(BigId, primary_key=True, index=True)
    issue_id = Column(BigInteger, ForeignKey('issues.id'), nullable=False, index=True)
    from_status = Column(String)
    to_status = Column(String, nullable=False)
    actor_id = Column(BigInteger, ForeignKey('users.id'))
    actor_role = Column(String)
    note = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    issue = relationship("Issue", back_populates="status_changes")


# Contractor bids
class Bid(Base):
    """
    A contractor's proposal against an issue open for bidding.

    Attributes:
        id (int): Primary key.
        issue_id (int): Foreign key to the Issue table.
        contractor_id (int): Foreign key to the bidding contractor.
        amount (float): Quoted amount.
        estimated_days (float): Quoted duration in days.
        proposal (str): Free-text proposal.
        status (str): One of `BidStatus`.
        review_notes (str): Notes from the reviewing administrator.
        reviewed_by_id (int): Foreign key to the reviewing administrator.
        reviewed_at (datetime): Review timestamp.
        created_at (datetime): Creation timestamp.
        updated_at (datetime): Update timestamp.
    """
    __tablename__ = "bids"

    id = Column(BigId, primary_key=True, index=True)
    issue_id = Column(BigInteger, ForeignKey('issues.id'), nullable=False, index=True)
    contractor_id = Column(BigInteger, ForeignKey('users.id'), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    estimated_days = Column(Float, nullable=False)
    proposal = Column(Text)
    status = Column(String, nullable=False, default=BidStatus.PENDING.value)
    review_notes = Column(Text)
    reviewed_by_id = Column(BigInteger, ForeignKey('users.id'))
    reviewed_at = Column(DateTime)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    issue = relationship("Issue", back_populates="bids")
    contractor = relationship("User", foreign_keys=[contractor_id])

    __table_args__ = (
        # At most one ACCEPTED bid per issue
        Index(
            'uq_bids_one_accepted_per_issue',
            'issue_id',
            unique=True,
            postgresql_where=text("status = 'ACCEPTED'"),
            sqlite_where=text("status = 'ACCEPTED'"),
        ),
    )


# Field progress records
class WorkUpdate(Base):
    """
    A field-progress record submitted by the assignee of an issue.

    Attributes:
        id (int): Primary key.
        issue_id (int): Foreign key to the Issue table.
        worker_id (int): Foreign key to the submitting worker or contractor.
        update_type (str): One of `WorkUpdateType`.
        description (str): What was done.
        progress_percentage (int): 0-100.
        hours_worked (float): Hours spent.
        materials (str): JSON list of {name, quantity, unit}.
        photos (str): JSON list of blob keys.
        verification_status (str): One of `VerificationStatus`.
        verified_by_id (int): Foreign key to the verifying inspector.
        inspector_notes (str): Inspector notes.
        verified_at (datetime): Verification timestamp.
        created_at (datetime): Creation timestamp.
        updated_at (datetime): Update timestamp.
    """
    __tablename__ = "work_updates"

    id = Column(BigId, primary_key=True, index=True)
    issue_id = Column(BigInteger, ForeignKey('issues.id'), nullable=False, index=True)
    worker_id = Column(BigInteger, ForeignKey('users.id'), nullable=False)
    update_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    progress_percentage = Column(Integer, nullable=False, default=0)
    hours_worked = Column(Float, nullable=False, default=0.0)
    materials = Column(Text)  # JSON string
    photos = Column(Text)  # JSON string
    verification_status = Column(String, nullable=False, default=VerificationStatus.PENDING.value, index=True)
    verified_by_id = Column(BigInteger, ForeignKey('users.id'))
    inspector_notes = Column(Text)
    verified_at = Column(DateTime)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    issue = relationship("Issue", back_populates="work_updates")
    worker = relationship("User", foreign_keys=[worker_id])

    @property
    def materials_used(self) -> list:
        return json.loads(self.materials) if self.materials else []

    @property
    def photo_keys(self) -> list:
        return json.loads(self.photos) if self.photos else []


# Notifications
class Notification(Base):
    """
    Represents an in-app user notification.

    Attributes:
        id (int): Primary key.
        user_id (int): Foreign key to the recipient User.
        event_type (str): One of `LifecycleEvent`.
        title (str): Notification title.
        body (str): Notification body.
        issue_id (int): Foreign key to the Issue table (optional).
        payload (str): JSON string with event details.
        read (bool): Read status.
        created_at (datetime): Creation timestamp.
        updated_at (datetime): Update timestamp.
    """
    __tablename__ = "notifications"

    id = Column(BigId, primary_key=True, index=True)
    user_id = Column(BigInteger, ForeignKey('users.id'), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    title = Column(String)
    body = Column(Text)
    issue_id = Column(BigInteger, ForeignKey('issues.id'), nullable=True)
    payload = Column(Text)  # JSON string
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)
