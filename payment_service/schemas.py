from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from payment_service.models import PaymentStatus


class PaymentRequest(BaseModel):
    order_id: int = Field(gt=0)
    amount: Decimal = Field(gt=0, decimal_places=2)
    payment_method: str = Field(default="CARD", min_length=1, max_length=50)


class PaymentResponse(BaseModel):
    id: int
    order_id: int
    amount: Decimal
    status: PaymentStatus
    transaction_id: str | None
    payment_method: str
    remarks: str | None
    timestamp: datetime

    model_config = {"from_attributes": True}
