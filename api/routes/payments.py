"""
Payments API routes.

Exposes pay/query/refund/close, the channel list and the provider notify
endpoint. Keep this thin: no SDK details here.
"""
from __future__ import annotations

import ipaddress
from typing import Awaitable, TypeVar

import anyio
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from api.dependencies import get_notify_manager, get_payment_gateway, get_payment_settings
from application.dtos.payments import (
    CloseRequest,
    QueryRequest,
    RefundRequest,
    UnifiedPayRequest,
)
from application.services.notify_manager import NotifyManager
from application.services.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from core.response import success_response
from core.settings import PaymentSettings
from domain.payment.exceptions import PaymentTimeoutError


router = APIRouter(tags=["Payments"])
logger = get_logger(__name__)

T = TypeVar("T")


async def _bounded(op: Awaitable[T], settings: PaymentSettings, channel: str) -> T:
    """Bound one gateway call; the provider may still complete, so query reconciles."""
    try:
        with anyio.fail_after(settings.timeouts.operation):
            return await op
    except TimeoutError:
        logger.warning("payment_operation_timeout", channel=channel, timeout=settings.timeouts.operation)
        raise PaymentTimeoutError(channel=channel) from None


def _ip_permitted(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("notify_allowlist_entry_invalid", entry=entry)
    return False


@router.post("/pay", summary="Create payment")
async def pay(
    payload: UnifiedPayRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: PaymentSettings = Depends(get_payment_settings),
):
    resp = await _bounded(gateway.pay(payload), settings, payload.channel)
    data = resp.model_dump(mode="json", include={"order_id", "out_trade_no", "pay_data", "qr_code", "pay_url", "channel"})
    return success_response(data=data, message=resp.message, code=resp.code)


@router.post("/query", summary="Query payment")
async def query(
    payload: QueryRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: PaymentSettings = Depends(get_payment_settings),
):
    resp = await _bounded(gateway.query(payload), settings, payload.channel)
    data = resp.model_dump(
        mode="json", include={"order_id", "out_trade_no", "trade_status", "total_amount", "pay_time", "channel"}
    )
    return success_response(data=data, message=resp.message, code=resp.code)


@router.post("/refund", summary="Refund payment")
async def refund(
    payload: RefundRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: PaymentSettings = Depends(get_payment_settings),
):
    resp = await _bounded(gateway.refund(payload), settings, payload.channel)
    data = resp.model_dump(
        mode="json",
        include={"refund_id", "out_refund_no", "refund_amount", "refund_status", "refund_time", "channel"},
    )
    return success_response(data=data, message=resp.message, code=resp.code)


@router.post("/close", summary="Close payment")
async def close(
    payload: CloseRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: PaymentSettings = Depends(get_payment_settings),
):
    await _bounded(gateway.close(payload), settings, payload.channel)
    return success_response(
        data={"channel": payload.channel, "order_id": payload.order_id, "out_trade_no": payload.out_trade_no},
        message="closed",
    )


@router.get("/channels", summary="List enabled channels")
async def channels(gateway: PaymentGateway = Depends(get_payment_gateway)):
    return success_response(data={"channels": [c.value for c in gateway.get_supported_channels()]})


@router.post("/notify/{channel}", summary="Provider payment notification", include_in_schema=False)
async def notify(
    channel: str,
    request: Request,
    manager: NotifyManager = Depends(get_notify_manager),
    settings: PaymentSettings = Depends(get_payment_settings),
):
    allowlist = settings.webhook.ip_allowlist or []
    if allowlist:
        remote_ip = request.client.host if request.client else ""
        if not _ip_permitted(remote_ip, allowlist):
            logger.warning("notify_ip_not_allowed", channel=channel, remote_ip=remote_ip)
            ack = manager.acknowledge(channel, False, "forbidden")
            return Response(content=ack.body, media_type=ack.media_type, status_code=403)

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    outcome = await manager.dispatch(channel, raw_body, headers)
    return Response(content=outcome.ack.body, media_type=outcome.ack.media_type, status_code=outcome.status_code)
