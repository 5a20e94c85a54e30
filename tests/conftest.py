"""Pytest bootstrap configuration.

Pin environment before application settings are imported, and provide RSA
key pairs plus an in-memory channel adapter shared by the payment tests.
"""
import os

# No real channels during tests; adapters are injected explicitly
os.environ["PAYMENT__ENABLED_CHANNELS"] = "[]"
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")

from decimal import Decimal
from typing import Optional

import anyio
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from application.dtos.payments import (
    NotifyResult,
    QueryResponse,
    RefundResponse,
    UnifiedPayResponse,
)
from domain.payment.enums import ChannelType, RefundStatus, TradeStatus


@pytest.fixture(scope="session")
def merchant_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def provider_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class FakeChannelAdapter:
    """Records every call; notify behaviour is configured per instance."""

    def __init__(
        self,
        channel: ChannelType,
        *,
        notify_result: Optional[NotifyResult] = None,
        notify_error: Optional[Exception] = None,
        close_error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.channel = channel
        self.calls: list[tuple[str, object]] = []
        self.closed = False
        self._notify_result = notify_result
        self._notify_error = notify_error
        self._close_error = close_error
        self._delay = delay

    def get_channel(self) -> ChannelType:
        return self.channel

    async def pay(self, request):
        self.calls.append(("pay", request))
        if self._delay:
            await anyio.sleep(self._delay)
        return UnifiedPayResponse(
            order_id=f"{self.channel.value}-1",
            out_trade_no=request.out_trade_no,
            qr_code="weixin://wxpay/bizpayurl?pr=abc",
            pay_data={"code_url": "weixin://wxpay/bizpayurl?pr=abc"},
            channel=self.channel,
        )

    async def query(self, request):
        self.calls.append(("query", request))
        return QueryResponse(
            order_id=request.order_id or "",
            out_trade_no=request.out_trade_no or "",
            trade_status=TradeStatus.SUCCESS,
            total_amount=Decimal("0.01"),
            channel=self.channel,
        )

    async def refund(self, request):
        self.calls.append(("refund", request))
        return RefundResponse(
            refund_id="R-1",
            out_refund_no=request.out_refund_no,
            refund_amount=request.refund_amount,
            refund_status=RefundStatus.PROCESSING,
            channel=self.channel,
        )

    async def close(self, request):
        self.calls.append(("close", request))

    async def handle_notify(self, body, headers=None):
        self.calls.append(("handle_notify", body))
        if self._notify_error is not None:
            raise self._notify_error
        return self._notify_result

    async def aclose(self):
        self.closed = True
        if self._close_error is not None:
            raise self._close_error


@pytest.fixture
def fake_adapter():
    return FakeChannelAdapter


@pytest.fixture
def notify_result() -> NotifyResult:
    return NotifyResult(
        success=True,
        out_trade_no="T-1001",
        total_amount=Decimal("12.34"),
        trade_status=TradeStatus.SUCCESS,
        order_id="4200000001",
        channel=ChannelType.WECHAT,
    )
