"""
Payment DTOs (Pydantic v2) used at application boundaries.

Amounts are in major currency units (yuan) as ``Decimal``; fen, provider time
formats and provider status vocabularies stay inside the channel adapters.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic.types import condecimal

from domain.payment.enums import ChannelType, PayScene, RefundStatus, TradeStatus
from shared.codes.payment_codes import PaymentCode


Amount = condecimal(gt=0, decimal_places=2)


class _ChannelRequest(BaseModel):
    # Channel stays a string here; the gateway resolves it so unknown values
    # surface as the unsupported-channel error instead of a validation error.
    channel: str = Field(min_length=1)

    @field_validator("channel", mode="before")
    @classmethod
    def _normalize_channel(cls, v: Any) -> Any:
        if isinstance(v, ChannelType):
            return v.value
        if isinstance(v, str):
            return v.strip().lower()
        return v


class _OrderRef(_ChannelRequest):
    order_id: Optional[str] = None
    out_trade_no: Optional[str] = None

    @model_validator(mode="after")
    def _require_order_ref(self):
        if not (self.order_id or self.out_trade_no):
            raise ValueError("order_id or out_trade_no is required")
        return self


class UnifiedPayRequest(_ChannelRequest):
    out_trade_no: str = Field(min_length=1, max_length=64)
    total_amount: Amount  # type: ignore[valid-type]
    subject: str = Field(min_length=1, max_length=256)
    body: Optional[str] = None
    scene: PayScene
    notify_url: Optional[str] = None
    return_url: Optional[str] = None
    payer_id: Optional[str] = None  # WeChat openid / Alipay buyer_id
    attach: Optional[str] = None
    client_ip: Optional[str] = None

    @field_validator("out_trade_no", "subject")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        s = v.strip()
        if not s:
            raise ValueError("must not be blank")
        return s


class UnifiedPayResponse(BaseModel):
    code: int = PaymentCode.SUCCESS
    message: str = "OK"
    order_id: str = ""
    out_trade_no: str
    pay_data: dict[str, Any] = Field(default_factory=dict)
    qr_code: str = ""
    pay_url: str = ""
    channel: ChannelType

    @property
    def success(self) -> bool:
        return self.code == PaymentCode.SUCCESS


class QueryRequest(_OrderRef):
    pass


class QueryResponse(BaseModel):
    code: int = PaymentCode.SUCCESS
    message: str = "OK"
    order_id: str = ""
    out_trade_no: str = ""
    trade_status: TradeStatus
    total_amount: Optional[Decimal] = None
    pay_time: Optional[datetime] = None
    channel: ChannelType


class RefundRequest(_OrderRef):
    out_refund_no: str = Field(min_length=1, max_length=64)
    refund_amount: Amount  # type: ignore[valid-type]
    total_amount: Amount  # type: ignore[valid-type]
    refund_reason: Optional[str] = None

    @model_validator(mode="after")
    def _refund_within_total(self):
        if self.refund_amount > self.total_amount:
            raise ValueError("refund_amount must not exceed total_amount")
        return self


class RefundResponse(BaseModel):
    code: int = PaymentCode.SUCCESS
    message: str = "OK"
    refund_id: str = ""
    out_refund_no: str
    refund_amount: Decimal
    refund_status: RefundStatus
    refund_time: Optional[datetime] = None
    channel: ChannelType


class CloseRequest(_OrderRef):
    pass


class NotifyResult(BaseModel):
    """Normalized, authenticated callback; shared read-only by every processor."""

    model_config = ConfigDict(frozen=True)

    success: bool
    out_trade_no: str
    total_amount: Decimal
    trade_status: TradeStatus
    order_id: str = ""
    channel: ChannelType
    pay_time: Optional[datetime] = None

    @field_validator("pay_time")
    @classmethod
    def _require_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("pay_time must be timezone aware")
        return v


class NotifyAck(BaseModel):
    """Provider-facing acknowledgement body."""

    model_config = ConfigDict(frozen=True)

    body: bytes
    media_type: str = "application/json"
