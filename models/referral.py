from pydantic import BaseModel
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class SetReferrer(BaseModel):
    referrer: Optional[str] = None
    referral_code: Optional[str] = None


class CommissionResponse(BaseModel):
    id: str
    referrer: str
    referred_user: str
    stake_id: str
    level: int
    stake_amount: float
    commission_rate: float
    commission_amount: float
    status: CommissionStatus
    created_at: datetime

    @classmethod
    def from_doc(cls, doc: dict) -> "CommissionResponse":
        return cls.model_validate({**doc, "id": doc["_id"]})


class LevelStats(BaseModel):
    level: int
    count: int
    total_commission: float


class ReferralStats(BaseModel):
    user: str
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    direct_referrals: int
    total_commission: float
    by_level: List[LevelStats]
    network_by_level: Dict[int, int]


class ReferralNode(BaseModel):
    user: str
    level: int
    joined_at: Optional[datetime] = None
    children: List["ReferralNode"] = []
