"""
WeChat Pay v3 adapter using the community `wechatpayv3` SDK.

Features used:
- Request signing with merchant private key (v3)
- Platform certificate verification and notify resource decryption (AES-256-GCM)
- APP/H5/JSAPI/NATIVE flows; client-side invoke parameters signed via the SDK

The SDK is blocking (requests based) and returns ``(http_status, text)``;
every call runs in a worker thread.
"""
from __future__ import annotations

import functools
import json
import secrets
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

from wechatpayv3 import WeChatPay, WeChatPayType

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
from domain.payment.enums import ChannelType, PayScene, RefundStatus, TradeStatus
from domain.payment.exceptions import (
    InvalidNotifyError,
    InvalidPaymentRequestError,
    PaymentProviderError,
    PaymentSignatureError,
    PaymentTransportError,
    UnsupportedSceneError,
)
from infrastructure.external.payments.base import BaseChannelAdapter, fen_to_yuan, yuan_to_fen
from shared.codes.payment_codes import PaymentCode
from core.settings import PaymentSettings


_PAY_TYPES = {
    PayScene.APP: WeChatPayType.APP,
    PayScene.H5: WeChatPayType.H5,
    PayScene.JSAPI: WeChatPayType.JSAPI,
    PayScene.NATIVE: WeChatPayType.NATIVE,
}

# Header names as the SDK looks them up
_NOTIFY_HEADERS = (
    "Wechatpay-Signature",
    "Wechatpay-Timestamp",
    "Wechatpay-Nonce",
    "Wechatpay-Serial",
    "Wechatpay-Signature-Type",
)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    # RFC 3339 with offset, e.g. 2024-01-02T15:04:05+08:00
    if not value:
        return None
    return datetime.fromisoformat(value)


class WechatPayAdapter(BaseChannelAdapter):
    channel = ChannelType.WECHAT

    def __init__(
        self,
        *,
        wx: Any,
        appid: str,
        mchid: str,
        notify_url: Optional[str] = None,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ):
        super().__init__(timeouts=timeouts, retry=retry)
        self._wx = wx
        self._appid = appid
        self._mchid = mchid
        self._notify_url = notify_url

    @classmethod
    def from_settings(cls, settings: PaymentSettings) -> "WechatPayAdapter":
        cfg = settings.wechat
        if not (cfg.appid and cfg.mch_id and cfg.mch_cert_serial_no and cfg.private_key_path and cfg.api_v3_key):
            raise RuntimeError("WECHAT configuration incomplete")
        key_path = Path(cfg.private_key_path)
        private_key = key_path.read_text(encoding="utf-8") if key_path.exists() else cfg.private_key_path
        wx = WeChatPay(
            wechatpay_type=WeChatPayType.NATIVE,
            mchid=cfg.mch_id,
            private_key=private_key,
            cert_serial_no=cfg.mch_cert_serial_no,
            appid=cfg.appid,
            apiv3_key=cfg.api_v3_key,
            notify_url=cfg.notify_url,
            cert_dir=cfg.platform_cert_dir,
            timeout=(settings.timeouts.connect, settings.timeouts.read),
        )
        return cls(
            wx=wx,
            appid=cfg.appid,
            mchid=cfg.mch_id,
            notify_url=cfg.notify_url,
            timeouts=settings.timeouts.model_dump(),
            retry=settings.retry.model_dump(),
        )

    async def _call(self, fn, **kwargs) -> tuple[int, dict[str, Any]]:
        code, text = await self._run_sync(functools.partial(fn, **kwargs))
        try:
            data = json.loads(text) if text else {}
        except ValueError:
            data = {"message": str(text)}
        if code is None or code >= 500:
            raise PaymentTransportError(
                f"wechat upstream error {code}: {data.get('message', '')}",
                channel=self.channel.value,
                details={"status": code},
            )
        return code, data

    def _provider_error(self, data: Mapping[str, Any]) -> PaymentProviderError:
        provider_code = str(data.get("code") or "")
        return PaymentProviderError(
            str(data.get("message") or provider_code or "wechat request rejected"),
            channel=self.channel.value,
            code=self._map_error_code(provider_code),
            provider_code=provider_code or None,
        )

    def _sign_invoke(self, *parts: str) -> str:
        return self._wx.sign(list(parts))

    async def pay(self, request: UnifiedPayRequest) -> UnifiedPayResponse:
        pay_type = _PAY_TYPES.get(request.scene)
        if pay_type is None:
            raise UnsupportedSceneError(request.scene.value, channel=self.channel.value)

        kwargs: dict[str, Any] = {
            "description": request.subject,
            "out_trade_no": request.out_trade_no,
            "amount": {"total": yuan_to_fen(request.total_amount), "currency": "CNY"},
            "notify_url": request.notify_url or self._notify_url,
            "attach": request.attach,
            "pay_type": pay_type,
        }
        if request.scene is PayScene.JSAPI:
            if not request.payer_id:
                raise InvalidPaymentRequestError(
                    "payer_id (openid) is required for jsapi", channel=self.channel.value, field="payer_id"
                )
            kwargs["payer"] = {"openid": request.payer_id}
        elif request.scene is PayScene.H5:
            if not request.client_ip:
                raise InvalidPaymentRequestError(
                    "client_ip is required for h5", channel=self.channel.value, field="client_ip"
                )
            kwargs["scene_info"] = {"payer_client_ip": request.client_ip, "h5_info": {"type": "Wap"}}

        self._log("payment_pay_request", out_trade_no=request.out_trade_no, scene=request.scene.value)
        code, data = await self._call(self._wx.pay, **kwargs)
        if not 200 <= code < 300:
            err = self._provider_error(data)
            self._log("payment_pay_rejected", out_trade_no=request.out_trade_no, provider_code=err.provider_code)
            return UnifiedPayResponse(
                code=err.code,
                message=err.message,
                out_trade_no=request.out_trade_no,
                channel=self.channel,
            )

        response = UnifiedPayResponse(out_trade_no=request.out_trade_no, channel=self.channel)
        timestamp = str(int(time.time()))
        nonce = secrets.token_hex(16)
        if request.scene is PayScene.NATIVE:
            response.qr_code = data.get("code_url", "")
            response.pay_data = {"code_url": response.qr_code}
        elif request.scene is PayScene.H5:
            response.pay_url = data.get("h5_url", "")
            response.pay_data = {"h5_url": response.pay_url}
        elif request.scene is PayScene.JSAPI:
            package = f"prepay_id={data.get('prepay_id', '')}"
            response.pay_data = {
                "appId": self._appid,
                "timeStamp": timestamp,
                "nonceStr": nonce,
                "package": package,
                "signType": "RSA",
                "paySign": self._sign_invoke(self._appid, timestamp, nonce, package),
            }
        else:
            prepay_id = data.get("prepay_id", "")
            response.pay_data = {
                "appid": self._appid,
                "partnerid": self._mchid,
                "prepayid": prepay_id,
                "package": "Sign=WXPay",
                "noncestr": nonce,
                "timestamp": timestamp,
                "sign": self._sign_invoke(self._appid, timestamp, nonce, prepay_id),
            }
        return response

    async def query(self, request: QueryRequest) -> QueryResponse:
        if request.out_trade_no:
            kwargs = {"out_trade_no": request.out_trade_no}
        else:
            kwargs = {"transaction_id": request.order_id}

        code, data = await self._retry(lambda: self._call(self._wx.query, **kwargs))
        if not 200 <= code < 300:
            raise self._provider_error(data)
        amount = data.get("amount") or {}
        total = amount.get("total")
        return QueryResponse(
            order_id=str(data.get("transaction_id") or ""),
            out_trade_no=str(data.get("out_trade_no") or request.out_trade_no or ""),
            trade_status=self._map_trade_status(data.get("trade_state"), default=TradeStatus.NOTPAY),
            total_amount=fen_to_yuan(total) if total is not None else None,
            pay_time=_parse_time(data.get("success_time")),
            channel=self.channel,
        )

    async def refund(self, request: RefundRequest) -> RefundResponse:
        kwargs: dict[str, Any] = {
            "out_refund_no": request.out_refund_no,
            "amount": {
                "refund": yuan_to_fen(request.refund_amount),
                "total": yuan_to_fen(request.total_amount),
                "currency": "CNY",
            },
            "reason": request.refund_reason,
            "notify_url": self._notify_url,
        }
        if request.order_id:
            kwargs["transaction_id"] = request.order_id
        else:
            kwargs["out_trade_no"] = request.out_trade_no

        self._log("payment_refund_request", out_refund_no=request.out_refund_no)
        code, data = await self._call(self._wx.refund, **kwargs)
        if not 200 <= code < 300:
            raise self._provider_error(data)
        refunded = (data.get("amount") or {}).get("refund")
        return RefundResponse(
            refund_id=str(data.get("refund_id") or ""),
            out_refund_no=str(data.get("out_refund_no") or request.out_refund_no),
            refund_amount=fen_to_yuan(refunded) if refunded is not None else request.refund_amount,
            refund_status=self._map_refund_status(data.get("status")),
            refund_time=_parse_time(data.get("success_time")),
            channel=self.channel,
        )

    async def close(self, request: CloseRequest) -> None:
        out_trade_no = request.out_trade_no
        if not out_trade_no:
            # v3 closes by merchant order id only
            found = await self.query(QueryRequest(channel=self.channel.value, order_id=request.order_id))
            out_trade_no = found.out_trade_no
        code, data = await self._call(self._wx.close, out_trade_no=out_trade_no)
        if 200 <= code < 300:
            self._log("payment_closed", out_trade_no=out_trade_no)
            return
        err = self._provider_error(data)
        if err.code == PaymentCode.ORDER_CLOSED:
            self._log("payment_already_closed", out_trade_no=out_trade_no)
            return
        raise err

    async def handle_notify(self, body: bytes, headers: Optional[Mapping[str, str]] = None) -> NotifyResult:
        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        sdk_headers = {name: lowered.get(name.lower(), "") for name in _NOTIFY_HEADERS}
        try:
            data = await self._run_sync(self._wx.callback, sdk_headers, body)
        except PaymentTransportError:
            raise
        except Exception as exc:
            # Decryption failures (bad tag, wrong key) are authentication failures
            raise PaymentSignatureError(f"wechat notify rejected: {exc}", channel=self.channel.value) from exc
        if not data:
            raise PaymentSignatureError("wechat notify signature verification failed", channel=self.channel.value)

        resource = data.get("resource")
        if not isinstance(resource, Mapping):
            raise InvalidNotifyError("wechat notify missing decrypted resource", channel=self.channel.value)
        if "refund_status" in resource:
            return self._refund_notify(resource)
        try:
            amount = resource.get("amount") or {}
            total = amount.get("total")
            trade_status = self._map_trade_status(resource.get("trade_state"), default=TradeStatus.PAYERROR)
            return NotifyResult(
                success=trade_status.is_paid,
                out_trade_no=str(resource["out_trade_no"]),
                total_amount=fen_to_yuan(total),
                trade_status=trade_status,
                order_id=str(resource.get("transaction_id") or ""),
                channel=self.channel,
                pay_time=_parse_time(resource.get("success_time")),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise InvalidNotifyError(f"malformed wechat notify: {exc}", channel=self.channel.value) from exc

    def _refund_notify(self, resource: Mapping[str, Any]) -> NotifyResult:
        # Refund notices carry refund_status instead of trade_state; only a
        # completed refund changes the order, which was paid to be refundable.
        refunded = self._map_refund_status(resource.get("refund_status")) is RefundStatus.SUCCESS
        self._log(
            "payment_refund_notify",
            out_trade_no=resource.get("out_trade_no"),
            out_refund_no=resource.get("out_refund_no"),
            refund_status=resource.get("refund_status"),
        )
        try:
            total = (resource.get("amount") or {}).get("total")
            return NotifyResult(
                success=True,
                out_trade_no=str(resource["out_trade_no"]),
                total_amount=fen_to_yuan(total),
                trade_status=TradeStatus.REFUND if refunded else TradeStatus.SUCCESS,
                order_id=str(resource.get("transaction_id") or ""),
                channel=self.channel,
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise InvalidNotifyError(f"malformed wechat refund notify: {exc}", channel=self.channel.value) from exc
