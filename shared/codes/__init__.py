"""
Business codes shared by every layer.

``BusinessCode`` covers request-level outcomes of the HTTP surface;
provider-facing outcomes live in ``shared.codes.payment_codes.PaymentCode``.
Both appear in the ``code`` field of the response envelope, ``0`` meaning
success.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    SUCCESS = 0

    # Request errors (1xxxx)
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    # Resource / routing (2xxxx)
    NOT_FOUND = 20006
    METHOD_NOT_ALLOWED = 20007

    # Access (3xxxx)
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    # System (4xxxx)
    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003

    # Rate limiting (5xxxx)
    TOO_MANY_REQUESTS = 50001


__all__ = ["BusinessCode"]
