from typing import List, Literal, Optional
from pydantic import BaseModel, Field

ProviderName = Literal["mockpay", "stripe", "flow", "webpay", "transfer"]


class HoldItemIn(BaseModel):
    ticket_type_id: str = Field(min_length=1)
    qty: int = Field(gt=0)


class HoldRequest(BaseModel):
    event_id: str = Field(min_length=1)
    items: List[HoldItemIn] = Field(min_length=1)
    ttl_seconds: Optional[int] = Field(default=None, gt=0)
    # hold the buyer already has for this event, if any
    hold_id: Optional[str] = None


class CheckoutRequest(BaseModel):
    hold_id: str = Field(min_length=1)
    provider: ProviderName = "mockpay"
    buyer_name: str = Field(min_length=2)
    buyer_email: str


class CheckinRequest(BaseModel):
    event_id: str = Field(min_length=1)
    qr_text: Optional[str] = None
    # manual entry wins over the scanned payload
    ticket_id: Optional[str] = None


class MockEmitRequest(BaseModel):
    kind: Literal["succeeded", "failed", "canceled", "pending"]


class TicketTypeCreate(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    unit_price: int = Field(ge=0)
    capacity: Optional[int] = Field(default=None, ge=0)


class EventCreate(BaseModel):
    id: Optional[str] = None
    title: str = Field(min_length=1)
    currency: str = "clp"
    ticket_types: List[TicketTypeCreate] = Field(min_length=1)
