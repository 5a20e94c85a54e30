"""
Application service routing payment use-cases to channel adapters.

This class depends only on the ChannelAdapter port and DTOs. Adapters are
built by infrastructure and injected from the composition root (lifespan),
keeping dependencies one-way. The channel map is fixed at construction.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from application.dtos.payments import (
    CloseRequest,
    NotifyResult,
    QueryRequest,
    QueryResponse,
    RefundRequest,
    RefundResponse,
    UnifiedPayRequest,
    UnifiedPayResponse,
)
from application.ports.payment_gateway import ChannelAdapter
from core.logging_config import get_logger
from domain.payment.enums import ChannelType
from domain.payment.exceptions import DuplicateChannelError, UnsupportedChannelError


logger = get_logger(__name__)


class PaymentGateway:
    def __init__(self, adapters: Iterable[ChannelAdapter], *, strict: bool = True) -> None:
        registry: dict[ChannelType, ChannelAdapter] = {}
        for adapter in adapters:
            channel = ChannelType.parse(adapter.get_channel())
            if channel in registry:
                if strict:
                    raise DuplicateChannelError(channel.value)
                logger.warning(
                    "payment_channel_overridden",
                    channel=channel.value,
                    previous=type(registry[channel]).__name__,
                    replacement=type(adapter).__name__,
                )
            registry[channel] = adapter
        self._adapters: Mapping[ChannelType, ChannelAdapter] = MappingProxyType(registry)

    def get_adapter(self, channel: ChannelType | str) -> ChannelAdapter:
        try:
            key = ChannelType.parse(channel)
        except ValueError:
            raise UnsupportedChannelError(channel) from None
        adapter = self._adapters.get(key)
        if adapter is None:
            raise UnsupportedChannelError(key.value)
        return adapter

    def get_supported_channels(self) -> list[ChannelType]:
        return list(self._adapters)

    async def pay(self, req: UnifiedPayRequest) -> UnifiedPayResponse:
        adapter = self.get_adapter(req.channel)
        logger.info(
            "payment_pay_request",
            channel=req.channel,
            out_trade_no=req.out_trade_no,
            scene=req.scene.value,
            total_amount=str(req.total_amount),
        )
        resp = await adapter.pay(req)
        logger.info(
            "payment_pay_response",
            channel=req.channel,
            out_trade_no=req.out_trade_no,
            code=int(resp.code),
            order_id=resp.order_id,
        )
        return resp

    async def query(self, req: QueryRequest) -> QueryResponse:
        adapter = self.get_adapter(req.channel)
        logger.info("payment_query_request", channel=req.channel, out_trade_no=req.out_trade_no, order_id=req.order_id)
        resp = await adapter.query(req)
        logger.info(
            "payment_query_response",
            channel=req.channel,
            out_trade_no=resp.out_trade_no,
            trade_status=resp.trade_status.value,
        )
        return resp

    async def refund(self, req: RefundRequest) -> RefundResponse:
        adapter = self.get_adapter(req.channel)
        logger.info(
            "payment_refund_request",
            channel=req.channel,
            out_trade_no=req.out_trade_no,
            out_refund_no=req.out_refund_no,
            refund_amount=str(req.refund_amount),
        )
        resp = await adapter.refund(req)
        logger.info(
            "payment_refund_response",
            channel=req.channel,
            out_refund_no=resp.out_refund_no,
            refund_status=resp.refund_status.value,
        )
        return resp

    async def close(self, req: CloseRequest) -> None:
        adapter = self.get_adapter(req.channel)
        logger.info("payment_close_request", channel=req.channel, out_trade_no=req.out_trade_no, order_id=req.order_id)
        await adapter.close(req)

    async def handle_notify(
        self,
        channel: ChannelType | str,
        body: bytes,
        headers: Optional[Mapping[str, str]] = None,
    ) -> NotifyResult:
        adapter = self.get_adapter(channel)
        return await adapter.handle_notify(body, headers)

    async def aclose(self) -> None:
        """Release adapter resources; one failing adapter does not keep others open."""
        for channel, adapter in self._adapters.items():
            try:
                await adapter.aclose()
            except Exception as exc:
                logger.error("payment_adapter_close_failed", channel=channel.value, error=str(exc))
