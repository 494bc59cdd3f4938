from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WithdrawalCreate(BaseModel):
    amount: float = Field(gt=0)
    destination: str


class WithdrawalResponse(BaseModel):
    id: str
    owner: str
    amount: float
    destination: str
    status: WithdrawalStatus
    period: str
    tx_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "WithdrawalResponse":
        return cls.model_validate({**doc, "id": doc["_id"]})


class AvailableBalance(BaseModel):
    total_rewards: float
    total_commissions: float
    total_withdrawn: float
    available: float
    withdrawal_allowed_today: bool
    has_withdrawn_this_month: bool
