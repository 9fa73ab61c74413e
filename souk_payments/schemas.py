from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IntentRequest(CamelModel):
    amount: Decimal
    order_id: str = Field(alias="orderId")
    customer_id: str = Field(alias="customerId")
    vendor_id: str = Field(alias="vendorId")
    method: str
    items: List[dict] = Field(default_factory=list)
    customer_phone: Optional[str] = Field(default=None, alias="customerPhone")


class RefundRequest(CamelModel):
    payment_id: str = Field(alias="paymentId")
    amount: Decimal
    reason: str = ""


class WalletRequest(CamelModel):
    owner_id: str = Field(alias="ownerId")
    owner_type: str = Field(alias="ownerType")
    currency: Optional[str] = None


class WithdrawRequest(CamelModel):
    amount: Decimal
    destination: str = Field(alias="bankAccountId")
