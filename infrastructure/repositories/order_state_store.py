"""
订单状态存储 - OrderStateStore 端口的内存与 Redis 实现

两种实现都以 out_trade_no 为键做比较并设置（compare-and-set）：
只有 domain.payment.order_state 允许的迁移才会写入。
"""
from __future__ import annotations

import asyncio
import socket
from typing import Optional

from redis import asyncio as aioredis
from redis.exceptions import WatchError

from core.logging_config import get_logger
from domain.payment.enums import TradeStatus
from domain.payment.order_state import can_transition


logger = get_logger(__name__)


class InMemoryOrderStateStore:
    """进程内实现，按订单串行化（asyncio.Lock）。适用于单进程与测试。

    订单锁按引用计数持有，最后一个使用者退出后即移除。
    """

    def __init__(self) -> None:
        self._states: dict[str, TradeStatus] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def get(self, out_trade_no: str) -> Optional[TradeStatus]:
        return self._states.get(out_trade_no)

    async def transition(self, out_trade_no: str, status: TradeStatus) -> bool:
        lock = self._locks.setdefault(out_trade_no, asyncio.Lock())
        self._lock_users[out_trade_no] = self._lock_users.get(out_trade_no, 0) + 1
        try:
            async with lock:
                current = self._states.get(out_trade_no)
                if not can_transition(current, status):
                    return False
                self._states[out_trade_no] = status
                return True
        finally:
            self._lock_users[out_trade_no] -= 1
            if not self._lock_users[out_trade_no]:
                del self._lock_users[out_trade_no]
                del self._locks[out_trade_no]


class RedisOrderStateStore:
    """Redis 实现，使用 WATCH/MULTI 乐观事务，多进程间安全。"""

    def __init__(self, client: aioredis.Redis, *, key_prefix: str = "payment:order_state", ttl_seconds: int = 7 * 24 * 3600) -> None:
        self._redis = client
        self._prefix = key_prefix
        self._ttl = ttl_seconds

    def _key(self, out_trade_no: str) -> str:
        return f"{self._prefix}:{out_trade_no}"

    async def get(self, out_trade_no: str) -> Optional[TradeStatus]:
        raw = await self._redis.get(self._key(out_trade_no))
        return TradeStatus(raw) if raw else None

    async def transition(self, out_trade_no: str, status: TradeStatus) -> bool:
        key = self._key(out_trade_no)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    current = TradeStatus(raw) if raw else None
                    if not can_transition(current, status):
                        return False
                    pipe.multi()
                    pipe.set(key, status.value, ex=self._ttl)
                    await pipe.execute()
                    return True
                except WatchError:
                    # 并发写入，重新读取后再判断
                    logger.debug("order_state_cas_retry", out_trade_no=out_trade_no)
                    continue

    async def aclose(self) -> None:
        await self._redis.aclose()


def create_redis_connection(url: str, *, max_connections: int = 10) -> aioredis.Redis:
    """创建 Redis 连接（带 TCP keepalive，decode_responses=True）。"""
    keepalive_opts = {}
    if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
        keepalive_opts = {
            socket.TCP_KEEPIDLE: 1,
            socket.TCP_KEEPINTVL: 1,
            socket.TCP_KEEPCNT: 3,
        }
    return aioredis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
        socket_keepalive=True,
        socket_keepalive_options=keepalive_opts,
    )
