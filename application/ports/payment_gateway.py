"""
Channel adapter port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements one adapter
per payment provider.
"""
from __future__ import annotations

from typing import Mapping, Optional, Protocol, runtime_checkable

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
from domain.payment.enums import ChannelType


@runtime_checkable
class ChannelAdapter(Protocol):
    """Uniform contract every provider integration satisfies.

    - ``pay`` returns a non-zero ``code`` for provider-side rejections and
      raises for transport/authentication failures.
    - ``query`` is the only operation retried internally.
    - ``refund`` forwards ``out_refund_no`` verbatim as the provider's
      idempotency key.
    - ``close`` treats "already closed" as success.
    - ``handle_notify`` authenticates before trusting any field.
    """

    async def pay(self, request: UnifiedPayRequest) -> UnifiedPayResponse: ...

    async def query(self, request: QueryRequest) -> QueryResponse: ...

    async def refund(self, request: RefundRequest) -> RefundResponse: ...

    async def close(self, request: CloseRequest) -> None: ...

    async def handle_notify(
        self, body: bytes, headers: Optional[Mapping[str, str]] = None
    ) -> NotifyResult: ...

    def get_channel(self) -> ChannelType: ...

    async def aclose(self) -> None: ...
