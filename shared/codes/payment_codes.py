"""
Payment specific codes and provider vocabulary mapping.

Values on the right-hand side of the status tables are canonical trade
statuses (see domain.payment.enums.TradeStatus); they are kept as plain
strings so this module stays importable from every layer.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004

    # Routing/configuration
    UNSUPPORTED_CHANNEL = 60010
    UNSUPPORTED_SCENE = 60011
    CHANNEL_CONFLICT = 60012

    # Provider business outcomes
    PROVIDER_BUSINESS_ERROR = 60020
    ORDER_NOT_FOUND = 60021
    ORDER_CLOSED = 60022
    ORDER_PAID = 60023
    ORDER_EXPIRED = 60024
    REFUND_NOT_ALLOWED = 60025
    INSUFFICIENT_BALANCE = 60026

    # Asynchronous notifications
    NOTIFY_INVALID = 60030
    NOTIFY_PROCESSOR_FAILED = 60031


# Provider trade status -> canonical trade status
PROVIDER_STATUS_TO_TRADE_STATUS = {
    "wechat": {
        # Per trade_state
        "SUCCESS": "SUCCESS",
        "REFUND": "REFUND",
        "NOTPAY": "NOTPAY",
        "CLOSED": "CLOSED",
        "REVOKED": "REVOKED",
        "USERPAYING": "USERPAYING",
        "PAYERROR": "PAYERROR",
    },
    "alipay": {
        # Per trade_status
        "WAIT_BUYER_PAY": "NOTPAY",
        "TRADE_SUCCESS": "SUCCESS",
        "TRADE_FINISHED": "SUCCESS",
        "TRADE_CLOSED": "CLOSED",
    },
    "unionpay": {
        # Per origRespCode / respCode of the original transaction
        "00": "SUCCESS",
        "A6": "SUCCESS",
        "03": "USERPAYING",
        "04": "USERPAYING",
        "05": "USERPAYING",
    },
}

# Provider refund status -> canonical refund status
PROVIDER_REFUND_STATUS = {
    "wechat": {
        "SUCCESS": "SUCCESS",
        "CLOSED": "CLOSED",
        "PROCESSING": "PROCESSING",
        "ABNORMAL": "ABNORMAL",
    },
    "alipay": {
        # fund_change flag of alipay.trade.refund
        "Y": "SUCCESS",
        "N": "PROCESSING",
        # refund_status of alipay.trade.fastpay.refund.query
        "REFUND_SUCCESS": "SUCCESS",
    },
    "unionpay": {
        "00": "SUCCESS",
        "A6": "SUCCESS",
        "03": "PROCESSING",
        "04": "PROCESSING",
        "05": "PROCESSING",
    },
}

# Provider business error code -> PaymentCode
PROVIDER_ERROR_TO_CODE = {
    "wechat": {
        "ORDER_NOT_EXIST": PaymentCode.ORDER_NOT_FOUND,
        "ORDERNOTEXIST": PaymentCode.ORDER_NOT_FOUND,
        "RESOURCE_NOT_EXISTS": PaymentCode.ORDER_NOT_FOUND,
        "ORDER_CLOSED": PaymentCode.ORDER_CLOSED,
        "ORDERCLOSED": PaymentCode.ORDER_CLOSED,
        "ORDERPAID": PaymentCode.ORDER_PAID,
        "NOTENOUGH": PaymentCode.INSUFFICIENT_BALANCE,
        "USER_ACCOUNT_ABNORMAL": PaymentCode.REFUND_NOT_ALLOWED,
        "INVALID_REQUEST": PaymentCode.PROVIDER_BUSINESS_ERROR,
        "FREQUENCY_LIMITED": PaymentCode.RATE_LIMITED,
    },
    "alipay": {
        "ACQ.TRADE_NOT_EXIST": PaymentCode.ORDER_NOT_FOUND,
        "ACQ.TRADE_HAS_CLOSE": PaymentCode.ORDER_CLOSED,
        "ACQ.TRADE_HAS_SUCCESS": PaymentCode.ORDER_PAID,
        "ACQ.TRADE_HAS_FINISHED": PaymentCode.ORDER_PAID,
        "ACQ.TRADE_NOT_ALLOW_REFUND": PaymentCode.REFUND_NOT_ALLOWED,
        "ACQ.REFUND_AMT_NOT_EQUAL_TOTAL": PaymentCode.REFUND_NOT_ALLOWED,
        "ACQ.SELLER_BALANCE_NOT_ENOUGH": PaymentCode.INSUFFICIENT_BALANCE,
        "ACQ.BUYER_BALANCE_NOT_ENOUGH": PaymentCode.INSUFFICIENT_BALANCE,
    },
    "unionpay": {
        "34": PaymentCode.ORDER_NOT_FOUND,
        "35": PaymentCode.ORDER_NOT_FOUND,
        "38": PaymentCode.ORDER_EXPIRED,
        "51": PaymentCode.INSUFFICIENT_BALANCE,
        "61": PaymentCode.REFUND_NOT_ALLOWED,
    },
}
