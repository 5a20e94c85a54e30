"""
订单状态机 - 统一交易状态之间允许的迁移

通知可能重复或乱序到达：相同状态的重复投递是无操作，
不允许的迁移（例如 SUCCESS 之后的 NOTPAY）被忽略而不是报错。
"""
from __future__ import annotations

from typing import Optional

from domain.payment.enums import TradeStatus


ALLOWED_TRANSITIONS: dict[TradeStatus, frozenset[TradeStatus]] = {
    TradeStatus.NOTPAY: frozenset({
        TradeStatus.USERPAYING,
        TradeStatus.SUCCESS,
        TradeStatus.CLOSED,
        TradeStatus.REVOKED,
        TradeStatus.PAYERROR,
    }),
    TradeStatus.USERPAYING: frozenset({
        TradeStatus.SUCCESS,
        TradeStatus.PAYERROR,
        TradeStatus.CLOSED,
        TradeStatus.REVOKED,
    }),
    TradeStatus.PAYERROR: frozenset({TradeStatus.SUCCESS, TradeStatus.CLOSED}),
    TradeStatus.SUCCESS: frozenset({TradeStatus.REFUND}),
    # 终态
    TradeStatus.CLOSED: frozenset(),
    TradeStatus.REVOKED: frozenset(),
    TradeStatus.REFUND: frozenset(),
}


def can_transition(current: Optional[TradeStatus], target: TradeStatus) -> bool:
    """Return True when moving from ``current`` to ``target`` changes the order.

    An unknown order (``current is None``) accepts any status. Re-applying the
    current status returns False so callers can treat it as already applied.
    """
    if current is None:
        return True
    if current == target:
        return False
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
