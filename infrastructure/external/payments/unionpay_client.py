"""
UnionPay (5.1.0 gateway) adapter over httpx plus the canonical signing utility.

There is no managed SDK: every request is a signed form post, every response
and notification is verified against the UnionPay public key before use.

Scenes:
- ``app``: ``appTransReq.do`` returns a ``tn`` the client SDK consumes.
- ``native``: ``backTransReq.do`` (txnSubType 07) returns a ``qrCode``.
- ``h5``/``pc``: a signed form the browser auto-submits to ``frontTransReq.do``;
  no server-side call is made.
"""
from __future__ import annotations

import json
from collections import OrderedDict
from datetime import datetime
from decimal import InvalidOperation
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

import httpx
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
from domain.payment.enums import ChannelType, PayScene, RefundStatus, TradeStatus
from domain.payment.exceptions import (
    InvalidNotifyError,
    PaymentProviderError,
    PaymentSignatureError,
    PaymentTransportError,
    UnsupportedSceneError,
)
from infrastructure.external.payments import signing
from infrastructure.external.payments.base import (
    CHINA_TZ,
    BaseChannelAdapter,
    fen_to_yuan,
    parse_china_time,
    yuan_to_fen,
)
from shared.codes.payment_codes import PaymentCode
from core.settings import PaymentSettings


PROD_GATEWAY = "https://gateway.95516.com/gateway/api/"
SANDBOX_GATEWAY = "https://gateway.test.95516.com/gateway/api/"

VERSION = "5.1.0"
CURRENCY_CNY = "156"
TIME_FORMAT = "%Y%m%d%H%M%S"
SIGN_FIELD = "signature"

RESP_OK = "00"
RESP_DUPLICATE = "12"
PAID_CODES = frozenset({"00", "A6"})

TXN_CONSUME = "01"
TXN_REFUND = "04"

# channelType: 07 internet (PC browser), 08 mobile
CHANNEL_PC = "07"
CHANNEL_MOBILE = "08"

_TXN_TIME_CACHE_SIZE = 10_000


def resolve_gateway(value: str) -> str:
    if value == "prod":
        return PROD_GATEWAY
    if value in ("", "sandbox"):
        return SANDBOX_GATEWAY
    return value if value.endswith("/") else value + "/"


class UnionPayAdapter(BaseChannelAdapter):
    channel = ChannelType.UNIONPAY

    def __init__(
        self,
        *,
        mer_id: str,
        private_key: rsa.RSAPrivateKey,
        public_key: rsa.RSAPublicKey,
        gateway: str = SANDBOX_GATEWAY,
        app_id: Optional[str] = None,
        front_url: Optional[str] = None,
        back_url: Optional[str] = None,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeouts=timeouts, retry=retry, http_client=http_client)
        self._mer_id = mer_id
        self._private_key = private_key
        self._public_key = public_key
        self._gateway = resolve_gateway(gateway)
        self._app_id = app_id
        self._front_url = front_url
        self._back_url = back_url
        # Queries must echo the original txnTime; remember the ones we submitted
        self._txn_times: OrderedDict[str, str] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: PaymentSettings) -> "UnionPayAdapter":
        cfg = settings.unionpay
        if not (cfg.mer_id and cfg.private_key_path and cfg.public_key_path):
            raise RuntimeError("UNIONPAY configuration incomplete")
        return cls(
            mer_id=cfg.mer_id,
            private_key=signing.load_private_key(cfg.private_key_path, cfg.private_key_password),
            public_key=signing.load_public_key(cfg.public_key_path),
            gateway=cfg.gateway,
            app_id=cfg.app_id,
            front_url=cfg.front_url,
            back_url=cfg.back_url,
            timeouts=settings.timeouts.model_dump(),
            retry=settings.retry.model_dump(),
        )

    # Wire helpers
    def _remember_txn_time(self, order_id: str, txn_time: str) -> None:
        self._txn_times[order_id] = txn_time
        self._txn_times.move_to_end(order_id)
        while len(self._txn_times) > _TXN_TIME_CACHE_SIZE:
            self._txn_times.popitem(last=False)

    def _base_params(self, **extra: str) -> dict[str, str]:
        params = {
            "version": VERSION,
            "encoding": "UTF-8",
            "signMethod": "01",
            "accessType": "0",
            "merId": self._mer_id,
            "appId": self._app_id or "",
        }
        params.update(extra)
        return params

    def _signed(self, params: dict[str, str]) -> dict[str, str]:
        signed = {k: v for k, v in params.items() if v}
        signed[SIGN_FIELD] = signing.sign(signed, self._private_key)
        return signed

    @staticmethod
    def _parse_body(text: str) -> dict[str, str]:
        text = text.strip()
        if text.startswith("{"):
            return {str(k): str(v) for k, v in json.loads(text).items()}
        return dict(parse_qsl(text, keep_blank_values=True))

    async def _post(self, endpoint: str, params: dict[str, str]) -> dict[str, str]:
        url = self._gateway + endpoint
        try:
            async with self.client() as http:
                resp = await http.post(url, data=self._signed(params))
        except httpx.HTTPError as exc:
            raise PaymentTransportError(f"unionpay request failed: {exc}", channel=self.channel.value) from exc
        if resp.status_code != 200:
            raise PaymentTransportError(
                f"unionpay upstream error {resp.status_code}",
                channel=self.channel.value,
                details={"status": resp.status_code},
            )
        try:
            data = self._parse_body(resp.text)
        except ValueError as exc:
            raise PaymentTransportError(f"unionpay returned malformed body: {exc}", channel=self.channel.value) from exc
        if not signing.verify(data, data.get(SIGN_FIELD), self._public_key):
            self._log("payment_response_unverified", endpoint=endpoint, resp_code=data.get("respCode"))
            raise PaymentSignatureError("unionpay response signature verification failed", channel=self.channel.value)
        return data

    def _provider_error(self, data: Mapping[str, str]) -> PaymentProviderError:
        provider_code = data.get("respCode") or ""
        return PaymentProviderError(
            data.get("respMsg") or f"unionpay request rejected ({provider_code})",
            channel=self.channel.value,
            code=self._map_error_code(provider_code),
            provider_code=provider_code or None,
        )

    @staticmethod
    def _now() -> str:
        return datetime.now(CHINA_TZ).strftime(TIME_FORMAT)

    # Operations
    async def pay(self, request: UnifiedPayRequest) -> UnifiedPayResponse:
        scene = request.scene
        if scene not in (PayScene.APP, PayScene.NATIVE, PayScene.H5, PayScene.PC):
            raise UnsupportedSceneError(scene.value, channel=self.channel.value)

        txn_time = self._now()
        params = self._base_params(
            txnType=TXN_CONSUME,
            txnSubType="07" if scene is PayScene.NATIVE else "01",
            bizType="000000" if scene is PayScene.NATIVE else "000201",
            channelType=CHANNEL_PC if scene is PayScene.PC else CHANNEL_MOBILE,
            orderId=request.out_trade_no,
            txnTime=txn_time,
            txnAmt=str(yuan_to_fen(request.total_amount)),
            currencyCode=CURRENCY_CNY,
            orderDesc=request.subject,
            reqReserved=request.attach or "",
            backUrl=request.notify_url or self._back_url or "",
            frontUrl=request.return_url or self._front_url or "",
        )
        self._remember_txn_time(request.out_trade_no, txn_time)
        self._log("payment_pay_request", out_trade_no=request.out_trade_no, scene=scene.value)
        response = UnifiedPayResponse(out_trade_no=request.out_trade_no, channel=self.channel)

        if scene in (PayScene.H5, PayScene.PC):
            action = self._gateway + "frontTransReq.do"
            response.pay_url = action
            response.pay_data = {"action": action, "method": "POST", "fields": self._signed(params)}
            return response

        endpoint = "appTransReq.do" if scene is PayScene.APP else "backTransReq.do"
        data = await self._post(endpoint, params)
        if data.get("respCode") != RESP_OK:
            err = self._provider_error(data)
            self._log("payment_pay_rejected", out_trade_no=request.out_trade_no, provider_code=err.provider_code)
            response.code = err.code
            response.message = err.message
            return response
        if scene is PayScene.APP:
            response.pay_data = {"tn": data.get("tn", "")}
        else:
            response.qr_code = data.get("qrCode", "")
            response.pay_data = {"qr_code": response.qr_code}
        return response

    async def _query_raw(self, *, order_id: Optional[str], out_trade_no: Optional[str]) -> dict[str, str]:
        if order_id:
            ref = {"queryId": order_id}
        else:
            ref = {"orderId": out_trade_no or "", "txnTime": self._txn_times.get(out_trade_no or "") or self._now()}
        params = self._base_params(txnType="00", txnSubType="00", bizType="000000", **ref)

        data = await self._retry(lambda: self._post("queryTrans.do", params))
        if data.get("respCode") != RESP_OK:
            raise self._provider_error(data)
        return data

    async def query(self, request: QueryRequest) -> QueryResponse:
        data = await self._query_raw(order_id=request.order_id, out_trade_no=request.out_trade_no)
        amount = data.get("txnAmt")
        return QueryResponse(
            order_id=data.get("queryId", request.order_id or ""),
            out_trade_no=data.get("orderId", request.out_trade_no or ""),
            trade_status=self._map_trade_status(data.get("origRespCode"), default=TradeStatus.NOTPAY),
            total_amount=fen_to_yuan(amount) if amount else None,
            pay_time=parse_china_time(data.get("txnTime"), TIME_FORMAT),
            channel=self.channel,
        )

    async def refund(self, request: RefundRequest) -> RefundResponse:
        orig_query_id = request.order_id
        if not orig_query_id:
            found = await self.query(QueryRequest(channel=self.channel.value, out_trade_no=request.out_trade_no))
            orig_query_id = found.order_id

        txn_time = self._now()
        params = self._base_params(
            txnType=TXN_REFUND,
            txnSubType="00",
            bizType="000201",
            channelType=CHANNEL_MOBILE,
            orderId=request.out_refund_no,
            origQryId=orig_query_id,
            txnTime=txn_time,
            txnAmt=str(yuan_to_fen(request.refund_amount)),
            reqReserved=request.refund_reason or "",
            backUrl=self._back_url or "",
        )
        self._log("payment_refund_request", out_refund_no=request.out_refund_no)
        data = await self._post("backTransReq.do", params)
        resp_code = data.get("respCode")

        if resp_code == RESP_DUPLICATE:
            # Same orderId already submitted: report the first refund's state
            self._log("payment_refund_duplicate", out_refund_no=request.out_refund_no)
            existing = await self._query_raw(order_id=None, out_trade_no=request.out_refund_no)
            amount = existing.get("txnAmt")
            return RefundResponse(
                refund_id=existing.get("queryId", ""),
                out_refund_no=request.out_refund_no,
                refund_amount=fen_to_yuan(amount) if amount else request.refund_amount,
                refund_status=self._map_refund_status(existing.get("origRespCode")),
                refund_time=parse_china_time(existing.get("txnTime"), TIME_FORMAT),
                channel=self.channel,
            )
        if resp_code != RESP_OK:
            raise self._provider_error(data)

        self._remember_txn_time(request.out_refund_no, txn_time)
        # Accepted; the final result arrives asynchronously
        return RefundResponse(
            refund_id=data.get("queryId", ""),
            out_refund_no=request.out_refund_no,
            refund_amount=request.refund_amount,
            refund_status=RefundStatus.PROCESSING,
            refund_time=None,
            channel=self.channel,
        )

    async def close(self, request: CloseRequest) -> None:
        # No close transaction for consumption orders; unpaid orders simply expire
        found = await self.query(
            QueryRequest(channel=self.channel.value, order_id=request.order_id, out_trade_no=request.out_trade_no)
        )
        if found.trade_status.is_paid:
            raise PaymentProviderError(
                "unionpay order already paid",
                channel=self.channel.value,
                code=PaymentCode.ORDER_PAID,
            )
        self._log("payment_close_noop", out_trade_no=found.out_trade_no, trade_status=found.trade_status.value)

    async def handle_notify(self, body: bytes, headers: Optional[Mapping[str, str]] = None) -> NotifyResult:
        try:
            params = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as exc:
            raise InvalidNotifyError("unionpay notify is not valid UTF-8", channel=self.channel.value) from exc
        if not signing.verify(params, params.get(SIGN_FIELD), self._public_key):
            raise PaymentSignatureError("unionpay notify signature verification failed", channel=self.channel.value)
        if params.get("merId") and params["merId"] != self._mer_id:
            raise InvalidNotifyError("unionpay notify merId mismatch", channel=self.channel.value)

        txn_type = params.get("txnType")
        if txn_type == TXN_REFUND:
            return await self._refund_notify(params)
        if txn_type != TXN_CONSUME:
            raise InvalidNotifyError(
                f"unsupported unionpay notify txnType {txn_type!r}",
                channel=self.channel.value,
                details={"txn_type": txn_type},
            )

        try:
            trade_status = TradeStatus.SUCCESS if params.get("respCode") in PAID_CODES else TradeStatus.PAYERROR
            return NotifyResult(
                success=trade_status.is_paid,
                out_trade_no=params["orderId"],
                total_amount=fen_to_yuan(params["txnAmt"]),
                trade_status=trade_status,
                order_id=params.get("queryId", ""),
                channel=self.channel,
                pay_time=parse_china_time(params.get("txnTime"), TIME_FORMAT),
            )
        except (KeyError, ValueError, InvalidOperation) as exc:
            raise InvalidNotifyError(f"malformed unionpay notify: {exc}", channel=self.channel.value) from exc

    async def _refund_notify(self, params: Mapping[str, str]) -> NotifyResult:
        """Report a refund result against the original consumption order.

        The callback names the refund's own ``orderId``; the original order is
        resolved from ``origQryId``. A completed refund moves it to REFUND, a
        failed one reports its current state unchanged.
        """
        orig_query_id = params.get("origQryId")
        if not orig_query_id:
            raise InvalidNotifyError("unionpay refund notify without origQryId", channel=self.channel.value)
        original = await self._query_raw(order_id=orig_query_id, out_trade_no=None)
        refunded = params.get("respCode") in PAID_CODES
        self._log(
            "payment_refund_notify",
            out_refund_no=params.get("orderId"),
            orig_query_id=orig_query_id,
            refunded=refunded,
        )
        try:
            if refunded:
                trade_status = TradeStatus.REFUND
            else:
                trade_status = self._map_trade_status(original.get("origRespCode"), default=TradeStatus.NOTPAY)
            amount = original.get("txnAmt") or params["txnAmt"]
            return NotifyResult(
                success=refunded or trade_status.is_paid,
                out_trade_no=original["orderId"],
                total_amount=fen_to_yuan(amount),
                trade_status=trade_status,
                order_id=orig_query_id,
                channel=self.channel,
                pay_time=parse_china_time(original.get("txnTime"), TIME_FORMAT),
            )
        except (KeyError, ValueError, InvalidOperation) as exc:
            raise InvalidNotifyError(f"malformed unionpay refund notify: {exc}", channel=self.channel.value) from exc
