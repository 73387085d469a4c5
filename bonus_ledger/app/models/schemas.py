from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .db import EntryStatus


class Credentials(BaseModel):
    login: str = Field(..., min_length=1, max_length=40)
    password: str = Field(..., min_length=1)


class StatusResponse(BaseModel):
    status: str = "ok"


class OrderResponse(BaseModel):
    number: str
    status: EntryStatus
    accrual: Optional[float] = Field(default=None, description="Accrued points in major units")
    uploaded_at: datetime


class BalanceResponse(BaseModel):
    current: float
    withdrawn: float


class WithdrawRequest(BaseModel):
    order: str = Field(..., min_length=1, description="Luhn-valid order number to charge")
    sum: Decimal = Field(..., gt=0, decimal_places=2, description="Amount in major units")


class WithdrawalResponse(BaseModel):
    order: str
    sum: float
    processed_at: datetime
