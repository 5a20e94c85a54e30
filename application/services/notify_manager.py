"""
Asynchronous payment notification pipeline.

A callback is authenticated and normalized by the channel adapter, then fanned
out to named processors in registration order, exactly once per callback.
The manager keeps no per-callback state; idempotency is the order-state
processor's job.

Registries are copy-on-write: writers swap a new immutable snapshot under a
lock, readers use whatever snapshot is current without locking.
"""
from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

from application.dtos.payments import NotifyAck, NotifyResult
from application.ports.notify import NotifyProcessor, NotifyResponder
from application.services.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.payment.enums import ChannelType
from domain.payment.exceptions import (
    InvalidNotifyError,
    NotifyProcessorError,
    PaymentError,
    PaymentSignatureError,
    UnsupportedChannelError,
)


logger = get_logger(__name__)

REJECTED_MESSAGE = "notification rejected"


def _label(channel: ChannelType | str) -> str:
    return channel.value if isinstance(channel, ChannelType) else str(channel)


class JsonNotifyResponder:
    """``{"code":"SUCCESS","message":"OK"}`` / ``{"code":"FAIL","message":...}`` (WeChat, UnionPay)."""

    media_type = "application/json"

    def respond(self, success: bool, message: str = "") -> NotifyAck:
        payload = {"code": "SUCCESS", "message": "OK"} if success else {"code": "FAIL", "message": message or "FAIL"}
        return NotifyAck(
            body=json.dumps(payload, separators=(",", ":")).encode("utf-8"),
            media_type=self.media_type,
        )


class PlainTextNotifyResponder:
    """Bare ``success`` / ``fail`` body (Alipay)."""

    media_type = "text/plain"

    def __init__(self, success_body: str = "success", failure_body: str = "fail") -> None:
        self._success = success_body.encode("utf-8")
        self._failure = failure_body.encode("utf-8")

    def respond(self, success: bool, message: str = "") -> NotifyAck:
        return NotifyAck(body=self._success if success else self._failure, media_type=self.media_type)


@dataclass(frozen=True)
class NotifyOutcome:
    authenticated: bool
    ack: NotifyAck
    result: Optional[NotifyResult] = None
    error: Optional[Exception] = None

    @property
    def status_code(self) -> int:
        return 200 if self.authenticated else 400


class NotifyManager:
    def __init__(self, gateway: PaymentGateway, *, default_responder: Optional[NotifyResponder] = None) -> None:
        self._gateway = gateway
        self._default_responder: NotifyResponder = default_responder or JsonNotifyResponder()
        self._lock = threading.Lock()
        self._processors: tuple[tuple[str, NotifyProcessor], ...] = ()
        self._responders: Mapping[ChannelType, NotifyResponder] = MappingProxyType({})

    # Registration
    def register_processor(self, name: str, processor: NotifyProcessor) -> None:
        with self._lock:
            if any(existing == name for existing, _ in self._processors):
                raise ValueError(f"notify processor already registered: {name}")
            self._processors = (*self._processors, (name, processor))
        logger.info("notify_processor_registered", processor=name)

    def unregister_processor(self, name: str) -> bool:
        with self._lock:
            remaining = tuple(item for item in self._processors if item[0] != name)
            removed = len(remaining) != len(self._processors)
            self._processors = remaining
        return removed

    def register_responder(self, channel: ChannelType | str, responder: NotifyResponder) -> None:
        key = ChannelType.parse(channel)
        with self._lock:
            updated = dict(self._responders)
            updated[key] = responder
            self._responders = MappingProxyType(updated)

    @property
    def processor_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self._processors)

    def acknowledge(self, channel: ChannelType | str, success: bool, message: str = "") -> NotifyAck:
        try:
            responder = self._responders.get(ChannelType.parse(channel), self._default_responder)
        except ValueError:
            responder = self._default_responder
        return responder.respond(success, message)

    # Pipeline
    async def _run_processors(self, result: NotifyResult) -> None:
        for name, processor in self._processors:
            try:
                await processor.process(result)
            except Exception as exc:
                raise NotifyProcessorError(name, exc, channel=result.channel.value) from exc

    async def handle_notify(
        self,
        channel: ChannelType | str,
        body: bytes,
        headers: Optional[Mapping[str, str]] = None,
    ) -> NotifyResult:
        """Verify, parse and process a callback, raising on any failure.

        Nothing runs when verification or parsing fails; a processor failure
        stops the processors after it.
        """
        result = await self._gateway.handle_notify(channel, body, headers)
        await self._run_processors(result)
        return result

    async def dispatch(
        self,
        channel: ChannelType | str,
        body: bytes,
        headers: Optional[Mapping[str, str]] = None,
    ) -> NotifyOutcome:
        """Run the pipeline and build the acknowledgement.

        Success is acknowledged iff the callback was authenticated and parsed;
        a processor failure is logged and reported in ``outcome.error`` but
        still acknowledged, since the provider cannot fix it by retrying.
        """
        try:
            result = await self._gateway.handle_notify(channel, body, headers)
        except UnsupportedChannelError as exc:
            logger.warning("notify_channel_unsupported", channel=_label(channel))
            return NotifyOutcome(False, self.acknowledge(channel, False, REJECTED_MESSAGE), error=exc)
        except PaymentSignatureError as exc:
            logger.warning("notify_verification_failed", channel=_label(channel), error=exc.message)
            return NotifyOutcome(False, self.acknowledge(channel, False, REJECTED_MESSAGE), error=exc)
        except InvalidNotifyError as exc:
            logger.warning("notify_parse_failed", channel=_label(channel), error=exc.message)
            return NotifyOutcome(False, self.acknowledge(channel, False, REJECTED_MESSAGE), error=exc)
        except PaymentError as exc:
            logger.error("notify_handling_failed", channel=_label(channel), error=exc.message)
            return NotifyOutcome(False, self.acknowledge(channel, False, REJECTED_MESSAGE), error=exc)

        error: Optional[Exception] = None
        try:
            await self._run_processors(result)
        except NotifyProcessorError as exc:
            logger.error(
                "notify_processor_failed",
                channel=result.channel.value,
                processor=exc.processor,
                out_trade_no=result.out_trade_no,
                error=str(exc.cause),
            )
            error = exc
        return NotifyOutcome(True, self.acknowledge(result.channel, True), result=result, error=error)
