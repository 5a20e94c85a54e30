"""
Order state port: compare-and-set of the canonical trade status per merchant order.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from domain.payment.enums import TradeStatus


@runtime_checkable
class OrderStateStore(Protocol):
    async def get(self, out_trade_no: str) -> Optional[TradeStatus]: ...

    async def transition(self, out_trade_no: str, status: TradeStatus) -> bool:
        """Apply ``status`` if allowed; True only when the stored state changed."""
        ...
