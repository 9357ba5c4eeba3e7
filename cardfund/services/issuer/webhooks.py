"""Issuer webhook payloads as a tagged variant discriminated on `txnType`."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from cardfund.services.issuer.client import parse_issuer_time


class _WebhookBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(alias="userId")
    bill_no: str = Field(alias="billNo")
    transaction_time: datetime | None = Field(default=None, alias="transactionTime")
    txn_status: Literal["SUCCESS", "FAILED"] = Field(default="SUCCESS", alias="txnStatus")

    @field_validator("transaction_time", mode="before")
    @classmethod
    def _time(cls, value: Any) -> Any:
        return parse_issuer_time(value)

    @property
    def kind(self) -> str:
        return type(self).__name__


class _CardMovement(_WebhookBase):
    card_id: str = Field(alias="cardId")
    amount: Decimal
    currency: str
    direction: Literal["DECREASE", "INCREASE"] = Field(alias="type")


class AuthEvent(_CardMovement):
    txn_type: Literal["AUTH"] = Field(alias="txnType")
    merchant: str = ""
    order_amount: Decimal | None = Field(default=None, alias="orderAmount")
    order_currency: str | None = Field(default=None, alias="orderCurrency")
    fee: Decimal = Decimal("0")
    result: str = ""


class ReversalEvent(_CardMovement):
    txn_type: Literal["REVERSAL"] = Field(alias="txnType")
    related_id: str = Field(default="", alias="relatedId")


class ClearingEvent(_CardMovement):
    txn_type: Literal["CLEARING", "SETTLED"] = Field(alias="txnType")
    related_id: str = Field(default="", alias="relatedId")
    merchant: str = ""


class RefundEvent(_CardMovement):
    txn_type: Literal["RETURN", "REFUND", "AUTHH"] = Field(alias="txnType")
    related_id: str = Field(default="", alias="relatedId")


class FeeEvent(_CardMovement):
    txn_type: Literal["AUTHC", "AUTHD", "AUTHE", "AUTHF", "AUTHG", "RETURNC"] = Field(alias="txnType")
    related_id: str = Field(default="", alias="relatedId")


class TopupEvent(_CardMovement):
    txn_type: Literal["TOPUP", "CHBACK"] = Field(alias="txnType")


class CreateCardEvent(_WebhookBase):
    txn_type: Literal["CREATE_CARD"] = Field(alias="txnType")
    card_id: str = Field(alias="cardId")
    card_status: int | None = Field(default=None, alias="cardStatus")


class CardClosedEvent(_WebhookBase):
    txn_type: Literal["CARD_CANCEL", "CARD_DESTROY"] = Field(alias="txnType")
    card_id: str = Field(alias="cardId")
    card_status: int | None = Field(default=None, alias="cardStatus")
    amount: Decimal = Decimal("0")


class UnknownEvent(BaseModel):
    """Anything with an unrecognised tag; the raw body is kept for operators."""

    txn_type: str
    raw: dict[str, Any]

    @property
    def kind(self) -> str:
        return "UnknownEvent"


IssuerEvent = Annotated[
    Union[
        AuthEvent,
        ReversalEvent,
        ClearingEvent,
        RefundEvent,
        FeeEvent,
        TopupEvent,
        CreateCardEvent,
        CardClosedEvent,
    ],
    Field(discriminator="txn_type"),
]

_adapter: TypeAdapter = TypeAdapter(IssuerEvent)
KNOWN_TAGS = {
    "AUTH",
    "REVERSAL",
    "CLEARING",
    "SETTLED",
    "RETURN",
    "REFUND",
    "AUTHH",
    "AUTHC",
    "AUTHD",
    "AUTHE",
    "AUTHF",
    "AUTHG",
    "RETURNC",
    "TOPUP",
    "CHBACK",
    "CREATE_CARD",
    "CARD_CANCEL",
    "CARD_DESTROY",
}


def parse_issuer_event(body: dict[str, Any]):
    """Return the variant for `body`.

    Unknown tags (including the issuer's own `UNKNOWN`) become `UnknownEvent`.
    A known tag with missing or invalid fields raises `ValueError`.
    """

    tag = body.get("txnType")
    if not isinstance(tag, str) or tag not in KNOWN_TAGS:
        return UnknownEvent(txn_type=str(tag), raw=body)
    try:
        return _adapter.validate_python(body)
    except ValidationError as exc:
        raise ValueError(f"invalid {tag} webhook: {exc.error_count()} field error(s)") from exc
