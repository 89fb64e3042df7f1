from .issues import router as issues_router
from .bids import router as bids_router
from .work_updates import router as work_updates_router
from .notifications import router as notifications_router
from .users import router as users_router

__all__ = [
    "issues_router",
    "bids_router",
    "work_updates_router",
    "notifications_router",
    "users_router",
]
