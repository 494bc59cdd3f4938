from pydantic import BaseModel, Field
from typing import Annotated, Literal, Optional, Union
from datetime import datetime
from enum import Enum


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class WinnerResponse(BaseModel):
    id: str
    raffle_id: str
    participant: str
    position: int
    tier: int
    ticket_number: int
    total_tickets: int
    prize: int
    status: PayoutStatus
    payout_tx_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    paid_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "WinnerResponse":
        return cls.model_validate({**doc, "id": doc["_id"]})


# Payout commands

class ProcessPayouts(BaseModel):
    action: Literal["process"] = "process"
    raffle_id: str


class RetryPayout(BaseModel):
    action: Literal["retry"] = "retry"
    payout_id: str


class RetryAllPayouts(BaseModel):
    action: Literal["retry_all"] = "retry_all"


class CancelPayout(BaseModel):
    action: Literal["cancel"] = "cancel"
    payout_id: str
    reason: str = Field(min_length=1)


PayoutCommand = Annotated[
    Union[ProcessPayouts, RetryPayout, RetryAllPayouts, CancelPayout],
    Field(discriminator="action"),
]


class PayoutResult(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
