"""
Built-in notify processors: structured logging, order state, Prometheus metrics.

Each receives the same frozen NotifyResult; collaborators (logger, store,
metrics registry) are injected so tests can observe them.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram

from application.dtos.payments import NotifyResult
from application.ports.order_state import OrderStateStore
from core.logging_config import get_logger


class LoggingNotifyProcessor:
    def __init__(self, logger: Any = None) -> None:
        self._logger = logger or get_logger(__name__)

    async def process(self, result: NotifyResult) -> None:
        self._logger.info(
            "notify_received",
            channel=result.channel.value,
            order_id=result.order_id,
            out_trade_no=result.out_trade_no,
            trade_status=result.trade_status.value,
            total_amount=str(result.total_amount),
            pay_time=result.pay_time.isoformat() if result.pay_time else None,
        )


class OrderStateNotifyProcessor:
    """Applies the notified status once; duplicates and regressions are no-ops."""

    def __init__(self, store: OrderStateStore, logger: Any = None) -> None:
        self._store = store
        self._logger = logger or get_logger(__name__)

    async def process(self, result: NotifyResult) -> None:
        previous = await self._store.get(result.out_trade_no)
        changed = await self._store.transition(result.out_trade_no, result.trade_status)
        if changed:
            self._logger.info(
                "order_state_updated",
                out_trade_no=result.out_trade_no,
                previous=previous.value if previous else None,
                trade_status=result.trade_status.value,
            )
        elif previous == result.trade_status:
            self._logger.info(
                "order_state_unchanged",
                out_trade_no=result.out_trade_no,
                trade_status=result.trade_status.value,
            )
        else:
            self._logger.warning(
                "order_state_transition_ignored",
                out_trade_no=result.out_trade_no,
                current=previous.value if previous else None,
                trade_status=result.trade_status.value,
            )


class MetricsNotifyProcessor:
    def __init__(self, registry: CollectorRegistry, namespace: str = "payment") -> None:
        self.notify_counter = Counter(
            f"{namespace}_notify_total",
            "Verified payment notifications",
            ["channel", "trade_status"],
            registry=registry,
        )
        self.settlement_lag = Histogram(
            f"{namespace}_notify_settlement_lag_seconds",
            "Delay between provider pay time and notification handling",
            ["channel"],
            buckets=(0.5, 1, 5, 15, 60, 300, 900, 3600),
            registry=registry,
        )

    async def process(self, result: NotifyResult) -> None:
        channel = result.channel.value
        self.notify_counter.labels(channel=channel, trade_status=result.trade_status.value).inc()
        lag = self._lag_seconds(result.pay_time)
        if lag is not None:
            self.settlement_lag.labels(channel=channel).observe(lag)

    @staticmethod
    def _lag_seconds(pay_time: Optional[datetime]) -> Optional[float]:
        if pay_time is None:
            return None
        return max(0.0, (datetime.now(timezone.utc) - pay_time).total_seconds())
