"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class BookingCreate(BaseModel):
    session_id: int = Field(gt=0)


class BookingResponse(BaseModel):
    id: int
    code: str
    user_id: int
    session_id: int
    status: str
    amount_paid: int
    checked_in_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class NoShowResponse(BaseModel):
    session_id: int
    count: int


class SessionEarningsResponse(BaseModel):
    session_id: int
    bookings: int
    gross_credits: int
    gross_amount: int
    commission_bps: int
    commission: int
    partner_payout: int
