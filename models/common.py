from pydantic import BaseModel
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T]
    next_cursor: Optional[str] = None
    has_more: bool = False


class DashboardStats(BaseModel):
    active_raffles: int
    completed_raffles: int
    cancelled_raffles: int
    total_pool: int
    total_entries: int
    unique_participants: int
    # None until at least one draw has completed
    total_prizes_awarded: Optional[int] = None
    pending_payouts: Optional[int] = None
    failed_payouts: Optional[int] = None
