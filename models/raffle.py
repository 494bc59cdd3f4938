from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum


class RaffleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    FLASH = "flash"
    MEGA = "mega"


class RaffleStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    ENDING = "ending"
    DRAWING = "drawing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DrawPhase(str, Enum):
    AWAITING = "awaiting"
    RESOLVED = "resolved"


class PrizeTier(BaseModel):
    tier: int = Field(ge=1)
    percentage: float = Field(gt=0, le=100)
    winner_count: int = Field(ge=1)


class RaffleCreate(BaseModel):
    type: RaffleType
    title: str
    description: str = ""
    entry_price: int
    max_entries_per_user: int
    winner_count: int = 1
    min_participants: int = 1
    start_time: datetime
    end_time: datetime
    draw_time: Optional[datetime] = None
    prize_tiers: Optional[List[PrizeTier]] = None
    protocol_fee_percent: Optional[float] = None
    allow_repeat_wins: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, v):
        return v.strip()


class DrawState(BaseModel):
    phase: DrawPhase
    request_id: Optional[str] = None
    requested_at: Optional[datetime] = None
    random_value: Optional[str] = None
    resolved_at: Optional[datetime] = None
    timed_out: bool = False


class RaffleResponse(BaseModel):
    id: str
    type: RaffleType
    title: str
    description: str = ""
    status: RaffleStatus
    paused: bool = False
    entry_price: int
    max_entries_per_user: int
    winner_count: int
    min_participants: int = 1
    allow_repeat_wins: bool = False
    prize_tiers: List[PrizeTier] = []
    total_entries: int = 0
    total_participants: int = 0
    total_pool: int = 0
    protocol_fee_percent: float
    start_time: datetime
    end_time: datetime
    draw_time: Optional[datetime] = None
    draw: Optional[DrawState] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "RaffleResponse":
        return cls.model_validate({**doc, "id": doc["_id"]})


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class RandomnessCallback(BaseModel):
    request_id: str
    random_value: str


class EntryEligibility(BaseModel):
    valid: bool
    reason: Optional[str] = None
    current_tickets: int = 0
    remaining: int = 0


class DrawReadiness(BaseModel):
    ready: bool
    reason: Optional[str] = None


class Participant(BaseModel):
    participant: str
    ticket_count: int
    total_paid: int
    entries: int
    first_entry_at: datetime


class RaffleStats(BaseModel):
    raffle_id: str
    status: RaffleStatus
    total_entries: int
    total_participants: int
    total_pool: int
    protocol_fee: int
    distributable_pool: int
    tickets_by_participant: Dict[str, int] = {}
    # None until a draw has produced winners
    payout_stats: Optional[Dict[str, int]] = None
