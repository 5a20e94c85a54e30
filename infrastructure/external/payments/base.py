"""
Base channel adapter implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement provider-specific logic.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Optional, TypeVar
from contextlib import asynccontextmanager

import anyio
import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception

from core.logging_config import get_logger
from domain.payment.enums import ChannelType, RefundStatus, TradeStatus
from domain.payment.exceptions import PaymentTransportError, is_retryable
from shared.codes.payment_codes import (
    PROVIDER_ERROR_TO_CODE,
    PROVIDER_REFUND_STATUS,
    PROVIDER_STATUS_TO_TRADE_STATUS,
    PaymentCode,
)


logger = get_logger(__name__)

T = TypeVar("T")

_FEN = Decimal("100")
_CENT = Decimal("0.01")

# Provider-local timestamps (Alipay, UnionPay) carry no offset and are Beijing time
CHINA_TZ = timezone(timedelta(hours=8), "Asia/Shanghai")


def yuan_to_fen(amount: Decimal) -> int:
    return int((Decimal(amount) * _FEN).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fen_to_yuan(fen: Any) -> Decimal:
    return (Decimal(str(fen)) / _FEN).quantize(_CENT)


def format_yuan(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(_CENT))


def parse_china_time(value: Optional[str], fmt: str) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, fmt).replace(tzinfo=CHINA_TZ)


class BaseChannelAdapter:
    channel: ChannelType

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base_backoff": 0.2}
        self._client: Optional[httpx.AsyncClient] = http_client

    def get_channel(self) -> ChannelType:
        return self.channel

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            self._timeouts_cfg["total"],
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts)
        # Kept open for reuse; aclose() releases it.
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Retry an idempotent read on transport failures only."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=float(self._retry_cfg["base_backoff"]), min=0.1, max=2.0),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        ):
            with attempt:
                return await fn()
        raise AssertionError("unreachable")  # pragma: no cover

    async def _run_sync(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking SDK call in a worker thread; network errors become transport errors."""
        try:
            # Deadline expiry abandons the worker thread; its late result is discarded
            return await anyio.to_thread.run_sync(fn, *args, abandon_on_cancel=True)
        except (OSError, httpx.TransportError) as exc:
            raise PaymentTransportError(
                f"{self.channel.value} transport failure: {exc}", channel=self.channel.value
            ) from exc

    # Helpers
    def _map_trade_status(self, provider_status: Optional[str], *, default: TradeStatus) -> TradeStatus:
        mapping = PROVIDER_STATUS_TO_TRADE_STATUS.get(self.channel.value, {})
        status = mapping.get(provider_status or "")
        if status is None:
            logger.warning(
                "trade_status_unmapped",
                channel=self.channel.value,
                provider_status=provider_status,
                mapped_to=default.value,
            )
            return default
        return TradeStatus(status)

    def _map_refund_status(self, provider_status: Optional[str]) -> RefundStatus:
        mapping = PROVIDER_REFUND_STATUS.get(self.channel.value, {})
        status = mapping.get(provider_status or "")
        if status is None:
            logger.warning(
                "refund_status_unmapped",
                channel=self.channel.value,
                provider_status=provider_status,
            )
            return RefundStatus.PROCESSING
        return RefundStatus(status)

    def _map_error_code(self, provider_code: Optional[str]) -> PaymentCode:
        mapping = PROVIDER_ERROR_TO_CODE.get(self.channel.value, {})
        return mapping.get(provider_code or "", PaymentCode.PROVIDER_BUSINESS_ERROR)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(event, channel=self.channel.value, **kwargs)
