"""
Payment exceptions mapped to unified BusinessException variants.

Every payment error carries the channel it came from and a ``retryable``
flag; callers decide on retries through :func:`is_retryable` rather than by
inspecting codes.
"""
from __future__ import annotations

from typing import Optional

import httpx

from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class PaymentError(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        code: int,
        error_type: str,
        channel: str | None = None,
        details: Optional[dict] = None,
        field: str | None = None,
    ):
        full_details = {"channel": channel} if channel else {}
        if details:
            full_details.update(details)
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=full_details or None,
            field=field,
        )
        self.channel = channel


class InvalidPaymentRequestError(PaymentError):
    def __init__(self, message: str, *, channel: str | None = None, field: str | None = None):
        super().__init__(
            message,
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            error_type="InvalidPaymentRequest",
            channel=channel,
            field=field,
        )


class UnsupportedChannelError(PaymentError):
    def __init__(self, channel: object):
        super().__init__(
            f"unsupported payment channel: {channel}",
            code=PaymentCode.UNSUPPORTED_CHANNEL,
            error_type="UnsupportedChannel",
            details={"requested_channel": str(channel)},
            field="channel",
        )


class UnsupportedSceneError(PaymentError):
    def __init__(self, scene: object, *, channel: str):
        super().__init__(
            f"scene '{scene}' not supported by channel '{channel}'",
            code=PaymentCode.UNSUPPORTED_SCENE,
            error_type="UnsupportedScene",
            channel=channel,
            details={"scene": str(scene)},
            field="scene",
        )


class DuplicateChannelError(PaymentError):
    def __init__(self, channel: str):
        super().__init__(
            f"payment channel registered more than once: {channel}",
            code=PaymentCode.CHANNEL_CONFLICT,
            error_type="DuplicateChannel",
            channel=channel,
        )


class PaymentProviderError(PaymentError):
    """Provider-side business rejection (order closed, already paid, ...)."""

    def __init__(
        self,
        message: str,
        *,
        channel: str,
        code: int = PaymentCode.PROVIDER_BUSINESS_ERROR,
        provider_code: str | None = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            message,
            code=code,
            error_type="PaymentProviderError",
            channel=channel,
            details=full_details,
        )
        self.provider_code = provider_code


class PaymentTransportError(PaymentError):
    """Network/system failure talking to the provider; safe for callers to retry."""

    retryable = True

    def __init__(self, message: str, *, channel: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.PROVIDER_RECOVERABLE,
            error_type="PaymentTransportError",
            channel=channel,
            details=details,
        )


class PaymentTimeoutError(PaymentError):
    retryable = True

    def __init__(self, message: str = "payment operation timed out", *, channel: str | None = None):
        super().__init__(
            message,
            code=PaymentCode.TIMEOUT,
            error_type="PaymentTimeout",
            channel=channel,
        )


class PaymentSignatureError(PaymentError):
    def __init__(self, message: str, *, channel: str, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.SIGNATURE_ERROR,
            error_type="PaymentSignatureError",
            channel=channel,
            details=details,
        )


class InvalidNotifyError(PaymentError):
    def __init__(self, message: str, *, channel: str, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.NOTIFY_INVALID,
            error_type="InvalidNotify",
            channel=channel,
            details=details,
        )


class NotifyProcessorError(PaymentError):
    """A notify processor failed; ``processor`` names the failing stage."""

    def __init__(self, processor: str, cause: BaseException, *, channel: str | None = None):
        super().__init__(
            f"notify processor '{processor}' failed: {cause}",
            code=PaymentCode.NOTIFY_PROCESSOR_FAILED,
            error_type="NotifyProcessorError",
            channel=channel,
            details={"processor": processor},
        )
        self.processor = processor
        self.cause = cause


def is_retryable(exc: BaseException) -> bool:
    """Retryability predicate shared by callers of the gateway."""
    if isinstance(exc, BusinessException):
        return exc.retryable
    return isinstance(exc, (httpx.TransportError, TimeoutError))
