from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum


class EntryStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUND_PENDING = "refund_pending"
    REFUND_PROCESSING = "refund_processing"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"


class EntrySubmit(BaseModel):
    ticket_count: int = Field(ge=1)
    tx_ref: str

    @field_validator("tx_ref")
    @classmethod
    def validate_tx_ref(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Transaction reference is required")
        return v


class EntryValidate(BaseModel):
    ticket_count: int = Field(ge=1)


class EntryResponse(BaseModel):
    id: str
    raffle_id: str
    participant: str
    ticket_count: int
    total_paid: int
    amount_received: Optional[float] = None
    tx_ref: str
    status: EntryStatus
    refund_tx_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "EntryResponse":
        return cls.model_validate({**doc, "id": doc["_id"]})


class UserEntry(EntryResponse):
    """Entry as listed in a participant's history"""
    raffle_title: Optional[str] = None
    raffle_type: Optional[str] = None
