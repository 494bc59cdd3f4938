from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class StakeStatus(str, Enum):
    PENDING = "pending"
    VERIFYING = "verifying"
    ACTIVE = "active"
    COMPLETED = "completed"


class StakeConfig(BaseModel):
    duration_months: int
    monthly_rate: float


class StakeCreate(BaseModel):
    amount: float = Field(gt=0)


class StakeTransaction(BaseModel):
    tx_ref: str = Field(min_length=1)


class StakeResponse(BaseModel):
    id: str
    owner: str
    amount: float
    config: StakeConfig
    status: StakeStatus
    tx_ref: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    verification_error: Optional[str] = None
    accrued_reward: float = 0.0
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict, accrued_reward: float = 0.0) -> "StakeResponse":
        return cls.model_validate({**doc, "id": doc["_id"], "accrued_reward": accrued_reward})
