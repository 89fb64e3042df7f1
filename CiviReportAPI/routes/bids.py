from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from CiviReportAPI.bidding import BidWorkflow
from CiviReportAPI.constants import Role
from CiviReportAPI.database import get_db
from CiviReportAPI.errors import CiviReportError, to_http_exception
from CiviReportAPI.models import Issue, User
from CiviReportAPI.repositories import BidRepository
from CiviReportAPI.routes.auth import get_current_user, require_roles
from CiviReportAPI.schemas import BidCreate, BidResponse, BidReview

router = APIRouter()


@router.post("/bids", response_model=BidResponse, status_code=status.HTTP_201_CREATED)
def create_bid(
    payload: BidCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Submit a contractor bid on an issue open for bidding.

    Args:
        payload (BidCreate): Issue, amount, estimated days and proposal.
        db (Session): The database session.
        current_user (User): The bidding contractor.

    Returns:
        BidResponse: The created bid.
    """
    try:
        return BidWorkflow(db).submit(
            current_user,
            payload.issue_id,
            payload.amount,
            payload.estimated_days,
            payload.proposal,
        )
    except CiviReportError as exc:
        raise to_http_exception(exc)


@router.get("/bids/mine", response_model=List[BidResponse])
def list_my_bids(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(Role.CONTRACTOR)),
):
    return BidRepository(db).list_for_contractor(current_user.id)


@router.get("/bids/issue/{issue_id}", response_model=List[BidResponse])
def list_issue_bids(
    issue_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    if not db.query(Issue.id).filter(Issue.id == issue_id).first():
        raise HTTPException(status_code=404, detail="Issue not found")
    return BidRepository(db).list_for_issue(issue_id)


@router.put("/bids/{bid_id}/review", response_model=BidResponse)
def review_bid(
    bid_id: int,
    payload: BidReview,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Accept or reject a pending bid.

    Accepting assigns the issue to the contractor and rejects the other
    pending bids in the same transaction.

    Raises:
        HTTPException: 404, 409, 403 or 412.
    """
    try:
        return BidWorkflow(db).review(bid_id, current_user, payload.status, payload.notes)
    except CiviReportError as exc:
        raise to_http_exception(exc)
