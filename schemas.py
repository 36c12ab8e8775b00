from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Principal(BaseModel):
    """The signed-in identity the lifecycle engine authorizes against."""

    id: int
    role: Literal["donor", "recipient"]

    model_config = ConfigDict(frozen=True)


class RequestCreate(BaseModel):
    listing_id: int
    # Checked by the engine so a bad value surfaces as a validation error
    # with the same shape as every other rule.
    requested_quantity: Any


class RequestStatusUpdate(BaseModel):
    status: str = Field(pattern="^(accepted|rejected)$")


class UserCreate(BaseModel):
    email: EmailStr
    name: str
    password: str
    role: Literal["donor", "recipient"]


class UserRead(BaseModel):
    id: int
    email: EmailStr
    name: str
    role: str

    model_config = ConfigDict(from_attributes=True)


class LoginData(BaseModel):
    email: EmailStr
    password: str


class ListingSummary(BaseModel):
    id: int
    donor_id: int
    title: str
    description: str
    quantity: int
    unit: str
    event_type: str
    location: str
    expiry_time: datetime
    status: str
    created_at: datetime
    updated_at: datetime
    request_count: int = 0
    remaining_quantity: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)
