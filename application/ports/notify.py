"""
Notify pipeline ports: processors consume a verified result, responders render
the provider-facing acknowledgement.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from application.dtos.payments import NotifyAck, NotifyResult


@runtime_checkable
class NotifyProcessor(Protocol):
    async def process(self, result: NotifyResult) -> None: ...


@runtime_checkable
class NotifyResponder(Protocol):
    def respond(self, success: bool, message: str = "") -> NotifyAck: ...
