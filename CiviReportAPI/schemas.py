from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, validator

from CiviReportAPI.constants import (
    BidStatus,
    IssueCategory,
    IssuePriority,
    IssueStatus,
    VerificationStatus,
    parse_status,
)


# Users
class UserSummary(BaseModel):
    id: int
    name: Optional[str] = None
    email: str
    role: str

    class Config:
        from_attributes = True


class WorkerResponse(UserSummary):
    status: str
    current_load: int
    max_capacity: int
    work_latitude: Optional[float] = None
    work_longitude: Optional[float] = None
    work_radius_km: Optional[float] = None


# Issues
class IssuePhotoResponse(BaseModel):
    id: int
    position: int
    blob_key: str
    filename: Optional[str] = None
    content_type: Optional[str] = None
    byte_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None

    class Config:
        from_attributes = True


class CommentCreate(BaseModel):
    text: str = Field(..., min_length=1)


class CommentResponse(BaseModel):
    id: int
    issue_id: int
    user_id: int
    text: str
    created_at: datetime

    class Config:
        from_attributes = True


class IssueResponse(BaseModel):
    id: int
    title: str
    description: str
    category: IssueCategory
    priority: IssuePriority
    latitude: float
    longitude: float
    address: Optional[str] = None
    reporter_id: int
    status: IssueStatus
    assigned_to_id: Optional[int] = None
    contractor_eligible: bool
    upvotes: int
    verification_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    photos: List[IssuePhotoResponse] = []
    comments: List[CommentResponse] = []

    class Config:
        from_attributes = True


class IssueStatusChangeResponse(BaseModel):
    id: int
    issue_id: int
    from_status: Optional[IssueStatus] = None
    to_status: IssueStatus
    actor_id: Optional[int] = None
    actor_role: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TransitionPayload(BaseModel):
    expected_status: IssueStatus
    new_status: IssueStatus
    assigned_to_id: Optional[int] = None
    reason: Optional[str] = None
    work_update_id: Optional[int] = None
    notes: Optional[str] = None

    # Older clients send lower-case or spaced spellings
    @validator("expected_status", "new_status", pre=True)
    def normalize_status(cls, value):
        return parse_status(value)


class AvailableTransitionsResponse(BaseModel):
    issue_id: int
    current_status: IssueStatus
    available: List[IssueStatus]


class PriorityUpdate(BaseModel):
    priority: IssuePriority

    @validator("priority", pre=True)
    def upper_priority(cls, value):
        return value.upper() if isinstance(value, str) else value


class UpvoteResponse(BaseModel):
    issue_id: int
    upvotes: int
    upvoted: bool


# Bids
class BidCreate(BaseModel):
    issue_id: int
    amount: float = Field(..., gt=0)
    estimated_days: float = Field(..., gt=0)
    proposal: Optional[str] = None


class BidReview(BaseModel):
    status: BidStatus
    notes: Optional[str] = None

    @validator("status", pre=True)
    def upper_status(cls, value):
        return value.upper() if isinstance(value, str) else value


class BidResponse(BaseModel):
    id: int
    issue_id: int
    contractor_id: int
    amount: float
    estimated_days: float
    proposal: Optional[str] = None
    status: BidStatus
    review_notes: Optional[str] = None
    reviewed_by_id: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Work updates
class MaterialItem(BaseModel):
    name: str
    quantity: float = 0
    unit: Optional[str] = None


class WorkUpdateResponse(BaseModel):
    id: int
    issue_id: int
    worker_id: int
    update_type: str
    description: str
    progress_percentage: int
    hours_worked: float
    materials_used: List[MaterialItem] = []
    photo_keys: List[str] = []
    verification_status: VerificationStatus
    verified_by_id: Optional[int] = None
    inspector_notes: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class VerificationPayload(BaseModel):
    status: VerificationStatus
    notes: Optional[str] = None

    @validator("status", pre=True)
    def upper_status(cls, value):
        return value.upper() if isinstance(value, str) else value


# Notifications
class NotificationResponse(BaseModel):
    id: int
    user_id: int
    event_type: str
    title: Optional[str] = None
    body: Optional[str] = None
    issue_id: Optional[int] = None
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True
