"""
Alipay adapter using the official alipay-sdk-python-all.

Implements app pay (order string), WAP and page pay (signed redirect URL),
precreate (QR), trade create (mini-program), query, refund, close, and
notify signature verification (RSA2 over the canonical form).
"""
from __future__ import annotations

import functools
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

from alipay.aop.api.AlipayClientConfig import AlipayClientConfig
from alipay.aop.api.DefaultAlipayClient import DefaultAlipayClient
from alipay.aop.api.exception.Exception import RequestException, ResponseException
from alipay.aop.api.request.AlipayTradeAppPayRequest import AlipayTradeAppPayRequest
from alipay.aop.api.request.AlipayTradeCloseRequest import AlipayTradeCloseRequest
from alipay.aop.api.request.AlipayTradeCreateRequest import AlipayTradeCreateRequest
from alipay.aop.api.request.AlipayTradeFastpayRefundQueryRequest import AlipayTradeFastpayRefundQueryRequest
from alipay.aop.api.request.AlipayTradePagePayRequest import AlipayTradePagePayRequest
from alipay.aop.api.request.AlipayTradePrecreateRequest import AlipayTradePrecreateRequest
from alipay.aop.api.request.AlipayTradeQueryRequest import AlipayTradeQueryRequest
from alipay.aop.api.request.AlipayTradeRefundRequest import AlipayTradeRefundRequest
from alipay.aop.api.request.AlipayTradeWapPayRequest import AlipayTradeWapPayRequest
from cryptography.hazmat.primitives.asymmetric import rsa

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
from domain.payment.enums import ChannelType, PayScene, TradeStatus
from domain.payment.exceptions import (
    InvalidNotifyError,
    InvalidPaymentRequestError,
    PaymentProviderError,
    PaymentSignatureError,
    PaymentTransportError,
)
from infrastructure.external.payments import signing
from infrastructure.external.payments.base import BaseChannelAdapter, format_yuan, parse_china_time
from shared.codes.payment_codes import PaymentCode
from core.settings import PaymentSettings


SUCCESS_CODE = "10000"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
NOTIFY_EXCLUDED = ("sign", "sign_type")


class AlipayAdapter(BaseChannelAdapter):
    channel = ChannelType.ALIPAY

    def __init__(
        self,
        *,
        client: Any,
        app_id: str,
        alipay_public_key: rsa.RSAPublicKey,
        notify_url: Optional[str] = None,
        return_url: Optional[str] = None,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ):
        super().__init__(timeouts=timeouts, retry=retry)
        self._alipay = client
        self._app_id = app_id
        self._public_key = alipay_public_key
        self._notify_url = notify_url
        self._return_url = return_url

    @staticmethod
    def _read_key(path: str) -> str:
        p = Path(path)
        return p.read_text(encoding="utf-8") if p.exists() else path

    @classmethod
    def from_settings(cls, settings: PaymentSettings) -> "AlipayAdapter":
        cfg = settings.alipay
        if not (cfg.app_id and cfg.private_key_path and cfg.alipay_public_key_path):
            raise RuntimeError("ALIPAY configuration incomplete")
        alipay_public_key = cls._read_key(cfg.alipay_public_key_path)

        config = AlipayClientConfig()
        config.server_url = cfg.gateway
        config.app_id = cfg.app_id
        config.app_private_key = cls._read_key(cfg.private_key_path)
        config.alipay_public_key = alipay_public_key
        config.sign_type = cfg.sign_type
        config.timeout = int(settings.timeouts.total) or 1
        return cls(
            client=DefaultAlipayClient(alipay_client_config=config),
            app_id=cfg.app_id,
            alipay_public_key=signing.load_public_key(alipay_public_key),
            notify_url=cfg.notify_url,
            return_url=cfg.return_url,
            timeouts=settings.timeouts.model_dump(),
            retry=settings.retry.model_dump(),
        )

    async def _invoke(self, method: str, request: Any, **kwargs: Any) -> Any:
        try:
            return await self._run_sync(functools.partial(getattr(self._alipay, method), request, **kwargs))
        except RequestException as exc:
            raise PaymentTransportError(f"alipay request failed: {exc}", channel=self.channel.value) from exc
        except ResponseException as exc:
            if "sign" in str(exc).lower():
                raise PaymentSignatureError(
                    f"alipay response verification failed: {exc}", channel=self.channel.value
                ) from exc
            raise PaymentTransportError(f"alipay response error: {exc}", channel=self.channel.value) from exc

    async def _execute(self, request: Any) -> dict[str, Any]:
        raw = await self._invoke("execute", request)
        if isinstance(raw, Mapping):
            return dict(raw)
        try:
            return json.loads(raw or "{}")
        except ValueError as exc:
            raise PaymentTransportError(f"alipay returned malformed body: {exc}", channel=self.channel.value) from exc

    def _provider_error(self, data: Mapping[str, Any]) -> PaymentProviderError:
        provider_code = str(data.get("sub_code") or data.get("code") or "")
        return PaymentProviderError(
            str(data.get("sub_msg") or data.get("msg") or "alipay request rejected"),
            channel=self.channel.value,
            code=self._map_error_code(provider_code),
            provider_code=provider_code or None,
        )

    @staticmethod
    def _order_ref(request: QueryRequest | RefundRequest | CloseRequest) -> dict[str, str]:
        if request.out_trade_no:
            return {"out_trade_no": request.out_trade_no}
        return {"trade_no": request.order_id or ""}

    def _build_pay_request(self, request: UnifiedPayRequest):
        biz: dict[str, Any] = {
            "out_trade_no": request.out_trade_no,
            "total_amount": format_yuan(request.total_amount),
            "subject": request.subject,
        }
        if request.body:
            biz["body"] = request.body
        if request.attach:
            biz["passback_params"] = request.attach

        scene = request.scene
        if scene is PayScene.APP:
            req = AlipayTradeAppPayRequest()
            biz["product_code"] = "QUICK_MSECURITY_PAY"
        elif scene is PayScene.H5:
            req = AlipayTradeWapPayRequest()
            biz["product_code"] = "QUICK_WAP_WAY"
        elif scene is PayScene.PC:
            req = AlipayTradePagePayRequest()
            biz["product_code"] = "FAST_INSTANT_TRADE_PAY"
        elif scene is PayScene.NATIVE:
            req = AlipayTradePrecreateRequest()
        else:
            if not request.payer_id:
                raise InvalidPaymentRequestError(
                    "payer_id (buyer_id) is required for jsapi", channel=self.channel.value, field="payer_id"
                )
            req = AlipayTradeCreateRequest()
            biz["buyer_id"] = request.payer_id
        req.biz_content = biz
        req.notify_url = request.notify_url or self._notify_url
        return_url = request.return_url or self._return_url
        if return_url and scene in (PayScene.H5, PayScene.PC):
            req.return_url = return_url
        return req

    async def pay(self, request: UnifiedPayRequest) -> UnifiedPayResponse:
        req = self._build_pay_request(request)
        self._log("payment_pay_request", out_trade_no=request.out_trade_no, scene=request.scene.value)
        response = UnifiedPayResponse(out_trade_no=request.out_trade_no, channel=self.channel)

        if request.scene is PayScene.APP:
            order_string = await self._invoke("sdk_execute", req)
            response.pay_data = {"order_string": order_string}
            return response
        if request.scene in (PayScene.H5, PayScene.PC):
            # GET page_execute yields a signed gateway URL
            response.pay_url = await self._invoke("page_execute", req, http_method="GET")
            response.pay_data = {"pay_url": response.pay_url}
            return response

        data = await self._execute(req)
        if data.get("code") != SUCCESS_CODE:
            err = self._provider_error(data)
            self._log("payment_pay_rejected", out_trade_no=request.out_trade_no, provider_code=err.provider_code)
            response.code = err.code
            response.message = err.message
            return response
        if request.scene is PayScene.NATIVE:
            response.qr_code = data.get("qr_code", "")
            response.pay_data = {"qr_code": response.qr_code}
        else:
            response.order_id = str(data.get("trade_no") or "")
            response.pay_data = {"trade_no": response.order_id}
        return response

    async def query(self, request: QueryRequest) -> QueryResponse:
        async def _once() -> dict[str, Any]:
            req = AlipayTradeQueryRequest()
            req.biz_content = self._order_ref(request)
            return await self._execute(req)

        data = await self._retry(_once)
        if data.get("code") != SUCCESS_CODE:
            raise self._provider_error(data)
        total = data.get("total_amount")
        return QueryResponse(
            order_id=str(data.get("trade_no") or ""),
            out_trade_no=str(data.get("out_trade_no") or request.out_trade_no or ""),
            trade_status=self._map_trade_status(data.get("trade_status"), default=TradeStatus.NOTPAY),
            total_amount=Decimal(str(total)) if total else None,
            pay_time=parse_china_time(data.get("send_pay_date"), TIME_FORMAT),
            channel=self.channel,
        )

    async def refund(self, request: RefundRequest) -> RefundResponse:
        biz = {
            **self._order_ref(request),
            "refund_amount": format_yuan(request.refund_amount),
            "out_request_no": request.out_refund_no,
        }
        if request.refund_reason:
            biz["refund_reason"] = request.refund_reason
        req = AlipayTradeRefundRequest()
        req.biz_content = biz

        self._log("payment_refund_request", out_refund_no=request.out_refund_no)
        data = await self._execute(req)
        if data.get("code") != SUCCESS_CODE:
            raise self._provider_error(data)

        fund_change = data.get("fund_change")
        refund_status = self._map_refund_status(fund_change)
        if fund_change != "Y":
            # A repeated out_request_no reports no fund change; ask for the original refund's status
            refund_status = await self._query_refund_status(request)
        return RefundResponse(
            refund_id=str(data.get("trade_no") or ""),
            out_refund_no=request.out_refund_no,
            refund_amount=request.refund_amount,
            refund_status=refund_status,
            refund_time=parse_china_time(data.get("gmt_refund_pay"), TIME_FORMAT),
            channel=self.channel,
        )

    async def _query_refund_status(self, request: RefundRequest):
        async def _once() -> dict[str, Any]:
            req = AlipayTradeFastpayRefundQueryRequest()
            req.biz_content = {**self._order_ref(request), "out_request_no": request.out_refund_no}
            return await self._execute(req)

        data = await self._retry(_once)
        if data.get("code") != SUCCESS_CODE:
            raise self._provider_error(data)
        return self._map_refund_status(data.get("refund_status"))

    async def close(self, request: CloseRequest) -> None:
        req = AlipayTradeCloseRequest()
        req.biz_content = self._order_ref(request)
        data = await self._execute(req)
        if data.get("code") == SUCCESS_CODE:
            self._log("payment_closed", out_trade_no=request.out_trade_no, order_id=request.order_id)
            return
        err = self._provider_error(data)
        if err.code == PaymentCode.ORDER_CLOSED:
            self._log("payment_already_closed", out_trade_no=request.out_trade_no)
            return
        raise err

    async def handle_notify(self, body: bytes, headers: Optional[Mapping[str, str]] = None) -> NotifyResult:
        # Alipay posts form-encoded payloads
        try:
            params = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as exc:
            raise InvalidNotifyError("alipay notify is not valid UTF-8", channel=self.channel.value) from exc
        if not signing.verify(params, params.get("sign"), self._public_key, exclude=NOTIFY_EXCLUDED):
            raise PaymentSignatureError("alipay notify signature verification failed", channel=self.channel.value)
        if params.get("app_id") and params["app_id"] != self._app_id:
            raise InvalidNotifyError("alipay notify app_id mismatch", channel=self.channel.value)

        try:
            trade_status = self._map_trade_status(params.get("trade_status"), default=TradeStatus.PAYERROR)
            return NotifyResult(
                success=trade_status.is_paid,
                out_trade_no=params["out_trade_no"],
                total_amount=Decimal(params["total_amount"]),
                trade_status=trade_status,
                order_id=params.get("trade_no", ""),
                channel=self.channel,
                pay_time=parse_china_time(params.get("gmt_payment"), TIME_FORMAT),
            )
        except (KeyError, ValueError, InvalidOperation) as exc:
            raise InvalidNotifyError(f"malformed alipay notify: {exc}", channel=self.channel.value) from exc
