from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class CurrentUser(BaseModel):
    """Identity resolved from the bearer token"""
    id: str
    role: Role = Role.USER


class UserResponse(BaseModel):
    id: str
    role: Role
    referral_code: str
    referred_by: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_doc(cls, doc: dict) -> "UserResponse":
        return cls.model_validate({**doc, "id": doc["_id"]})
