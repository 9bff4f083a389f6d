from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

TOTAL_TICKETS = 100
MAX_BUYER_LENGTH = 20
MAX_PHONE_LENGTH = 11

TicketNumber = Annotated[int, Field(strict=True, ge=0, le=TOTAL_TICKETS - 1)]
BuyerName = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_BUYER_LENGTH),
]
Phone = Annotated[
    str, StringConstraints(strip_whitespace=True, max_length=MAX_PHONE_LENGTH)
]


class Ticket(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    number: TicketNumber
    buyer: str
    phone: str = ''
    paid: bool = False
    sold_at: datetime = Field(alias='soldAt')

    def to_document(self) -> dict:
        return self.model_dump(mode='json', by_alias=True, exclude={'number'})


class SaleOrder(BaseModel):
    model_config = ConfigDict(extra='forbid')

    number: TicketNumber
    buyer: BuyerName
    phone: Phone = ''


class PaymentUpdate(BaseModel):
    model_config = ConfigDict(extra='forbid')

    paid: bool = Field(strict=True)


class TicketResponse(BaseModel):
    number: int
    buyer: str
    phone: str
    paid: bool
    sold_at: datetime


class BoardResponse(BaseModel):
    tickets: list[TicketResponse]
    sold: int
    remaining: int
    total: int = TOTAL_TICKETS
