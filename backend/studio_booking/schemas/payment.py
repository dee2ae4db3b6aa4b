"""
Pydantic schemas for credit purchases and payment endpoints.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class CheckoutCreate(BaseModel):
    credits: Optional[int] = Field(default=None, gt=0)
    package_id: Optional[str] = Field(default=None, max_length=32)

    @model_validator(mode="after")
    def one_of_credits_or_package(self):
        if (self.credits is None) == (self.package_id is None):
            raise ValueError("Provide exactly one of credits or package_id")
        return self


class CheckoutResponse(BaseModel):
    checkout_session_id: str
    redirect_url: Optional[str]
    amount: int
    credits: int


class PurchaseResponse(BaseModel):
    id: int
    credits: int
    amount: int
    currency: str
    package_id: Optional[str] = None
    checkout_session_id: str
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PurchaseListResponse(BaseModel):
    purchases: list[PurchaseResponse]
    total: int
    page: int
    page_size: int


class VerifySessionResponse(BaseModel):
    purchase: PurchaseResponse
    processor_status: str


class BalanceResponse(BaseModel):
    credits: int


class CreditPackageResponse(BaseModel):
    id: str
    name: str
    credits: int
    price: int
    description: str
    popular: bool

    model_config = {"from_attributes": True}


class RefundResponse(BaseModel):
    purchase_id: int
    refund_id: str
    status: str


class WebhookAck(BaseModel):
    received: bool = True
