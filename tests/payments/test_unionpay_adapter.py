from decimal import Decimal
from urllib.parse import parse_qsl, urlencode

import httpx
import pytest

from application.dtos.payments import CloseRequest, QueryRequest, RefundRequest, UnifiedPayRequest
from application.services.notify_processors import OrderStateNotifyProcessor
from domain.payment.enums import PayScene, RefundStatus, TradeStatus
from domain.payment.exceptions import (
    InvalidNotifyError,
    PaymentProviderError,
    PaymentSignatureError,
    PaymentTransportError,
    UnsupportedSceneError,
)
from infrastructure.external.payments import signing
from infrastructure.external.payments.unionpay_client import SANDBOX_GATEWAY, UnionPayAdapter
from infrastructure.repositories.order_state_store import InMemoryOrderStateStore
from shared.codes.payment_codes import PaymentCode


MER_ID = "777290058110048"


class _FakeUnionPay:
    """Verifies merchant-signed requests and answers with provider-signed forms."""

    def __init__(self, merchant_key, provider_key):
        self.merchant_public = merchant_key.public_key()
        self.provider_key = provider_key
        self.requests: list[tuple[str, dict]] = []
        self.replies: dict[str, list[dict]] = {}
        self.status_code = 200
        self.sign_replies = True

    def reply(self, endpoint: str, **fields):
        self.replies.setdefault(endpoint, []).append(fields)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        form = dict(parse_qsl(request.content.decode("utf-8")))
        assert signing.verify(form, form.get("signature"), self.merchant_public)
        self.requests.append((endpoint, form))
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="upstream down")
        fields = {"merId": MER_ID, "respMsg": "ok", **self.replies[endpoint].pop(0)}
        if self.sign_replies:
            fields["signature"] = signing.sign(fields, self.provider_key)
        return httpx.Response(200, text=urlencode(fields))


@pytest.fixture
def upstream(merchant_key, provider_key):
    return _FakeUnionPay(merchant_key, provider_key)


@pytest.fixture
def adapter(upstream, merchant_key, provider_key):
    return UnionPayAdapter(
        mer_id=MER_ID,
        private_key=merchant_key,
        public_key=provider_key.public_key(),
        back_url="https://merchant.example.com/api/v1/notify/unionpay",
        retry={"max": 0, "base_backoff": 0.01},
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
    )


def _pay(scene: PayScene) -> UnifiedPayRequest:
    return UnifiedPayRequest(
        channel="unionpay",
        out_trade_no="T-2001",
        total_amount=Decimal("12.34"),
        subject="Tea",
        scene=scene,
    )


@pytest.mark.asyncio
async def test_app_pay_returns_tn(adapter, upstream):
    upstream.reply("appTransReq.do", respCode="00", tn="777777777")
    resp = await adapter.pay(_pay(PayScene.APP))

    assert resp.success
    assert resp.pay_data == {"tn": "777777777"}
    endpoint, form = upstream.requests[0]
    assert endpoint == "appTransReq.do"
    assert form["txnAmt"] == "1234"
    assert form["channelType"] == "08"
    assert form["backUrl"].endswith("/notify/unionpay")


@pytest.mark.asyncio
async def test_native_pay_returns_qr_code(adapter, upstream):
    upstream.reply("backTransReq.do", respCode="00", qrCode="https://qr.95516.com/00010000/abc")
    resp = await adapter.pay(_pay(PayScene.NATIVE))
    assert resp.qr_code == "https://qr.95516.com/00010000/abc"
    assert upstream.requests[0][1]["txnSubType"] == "07"


@pytest.mark.asyncio
async def test_pc_pay_builds_signed_form_without_calling_upstream(adapter, upstream, merchant_key):
    resp = await adapter.pay(_pay(PayScene.PC))

    assert resp.pay_url == SANDBOX_GATEWAY + "frontTransReq.do"
    fields = resp.pay_data["fields"]
    assert fields["channelType"] == "07"
    assert signing.verify(fields, fields["signature"], merchant_key.public_key())
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_pay_rejection_is_reported_in_response(adapter, upstream):
    upstream.reply("appTransReq.do", respCode="51", respMsg="insufficient balance")
    resp = await adapter.pay(_pay(PayScene.APP))
    assert not resp.success
    assert resp.code == PaymentCode.INSUFFICIENT_BALANCE
    assert resp.message == "insufficient balance"


@pytest.mark.asyncio
async def test_jsapi_is_not_supported(adapter):
    with pytest.raises(UnsupportedSceneError):
        await adapter.pay(_pay(PayScene.JSAPI))


@pytest.mark.asyncio
async def test_query_reuses_submitted_txn_time(adapter, upstream):
    upstream.reply("appTransReq.do", respCode="00", tn="1")
    await adapter.pay(_pay(PayScene.APP))
    pay_time = upstream.requests[0][1]["txnTime"]

    upstream.reply(
        "queryTrans.do",
        respCode="00",
        origRespCode="00",
        queryId="Q-1",
        orderId="T-2001",
        txnAmt="1234",
        txnTime=pay_time,
    )
    resp = await adapter.query(QueryRequest(channel="unionpay", out_trade_no="T-2001"))

    assert upstream.requests[1][1]["txnTime"] == pay_time
    assert resp.trade_status is TradeStatus.SUCCESS
    assert resp.total_amount == Decimal("12.34")
    assert resp.order_id == "Q-1"
    assert resp.pay_time.utcoffset().total_seconds() == 8 * 3600


@pytest.mark.asyncio
async def test_query_unknown_orig_code_defaults_to_notpay(adapter, upstream):
    upstream.reply("queryTrans.do", respCode="00", origRespCode="zz", queryId="Q-1", orderId="T-2001")
    resp = await adapter.query(QueryRequest(channel="unionpay", order_id="Q-1"))
    assert upstream.requests[0][1]["queryId"] == "Q-1"
    assert resp.trade_status is TradeStatus.NOTPAY


@pytest.mark.asyncio
async def test_duplicate_refund_reports_original_status(adapter, upstream):
    upstream.reply("backTransReq.do", respCode="12", respMsg="duplicate order")
    upstream.reply("queryTrans.do", respCode="00", origRespCode="00", queryId="RQ-1", txnAmt="500")

    resp = await adapter.refund(
        RefundRequest(
            channel="unionpay",
            order_id="Q-1",
            out_refund_no="R-1",
            refund_amount=Decimal("5.00"),
            total_amount=Decimal("12.34"),
        )
    )

    assert resp.refund_status is RefundStatus.SUCCESS
    assert resp.refund_id == "RQ-1"
    assert resp.refund_amount == Decimal("5.00")
    refund_form = upstream.requests[0][1]
    assert refund_form["orderId"] == "R-1"
    assert refund_form["origQryId"] == "Q-1"
    assert upstream.requests[1][1]["orderId"] == "R-1"


@pytest.mark.asyncio
async def test_accepted_refund_is_processing(adapter, upstream):
    upstream.reply("backTransReq.do", respCode="00", queryId="RQ-2")
    resp = await adapter.refund(
        RefundRequest(
            channel="unionpay",
            order_id="Q-1",
            out_refund_no="R-2",
            refund_amount=Decimal("1.00"),
            total_amount=Decimal("12.34"),
        )
    )
    assert resp.refund_status is RefundStatus.PROCESSING
    assert upstream.requests[0][1]["txnType"] == "04"


@pytest.mark.asyncio
async def test_close_paid_order_is_rejected(adapter, upstream):
    upstream.reply("queryTrans.do", respCode="00", origRespCode="00", queryId="Q-1", orderId="T-2001")
    with pytest.raises(PaymentProviderError) as exc_info:
        await adapter.close(CloseRequest(channel="unionpay", order_id="Q-1"))
    assert exc_info.value.code == PaymentCode.ORDER_PAID


@pytest.mark.asyncio
async def test_close_unpaid_order_is_noop(adapter, upstream):
    upstream.reply("queryTrans.do", respCode="00", origRespCode="05", queryId="Q-1", orderId="T-2001")
    await adapter.close(CloseRequest(channel="unionpay", order_id="Q-1"))


@pytest.mark.asyncio
async def test_unsigned_response_is_rejected(adapter, upstream):
    upstream.sign_replies = False
    upstream.reply("appTransReq.do", respCode="00", tn="1")
    with pytest.raises(PaymentSignatureError):
        await adapter.pay(_pay(PayScene.APP))


@pytest.mark.asyncio
async def test_upstream_failure_is_transport_error(adapter, upstream):
    upstream.status_code = 503
    with pytest.raises(PaymentTransportError) as exc_info:
        await adapter.query(QueryRequest(channel="unionpay", order_id="Q-1"))
    assert exc_info.value.retryable


def _notify_body(provider_key, **overrides) -> bytes:
    fields = {
        "merId": MER_ID,
        "txnType": "01",
        "orderId": "T-2001",
        "queryId": "Q-1",
        "respCode": "00",
        "txnAmt": "1234",
        "txnTime": "20240102150405",
        **overrides,
    }
    fields["signature"] = signing.sign(fields, provider_key)
    return urlencode(fields).encode("utf-8")


@pytest.mark.asyncio
async def test_notify_is_verified_and_normalized(adapter, provider_key):
    result = await adapter.handle_notify(_notify_body(provider_key))
    assert result.success
    assert result.trade_status is TradeStatus.SUCCESS
    assert result.total_amount == Decimal("12.34")
    assert result.order_id == "Q-1"
    assert result.pay_time.isoformat() == "2024-01-02T15:04:05+08:00"


@pytest.mark.asyncio
async def test_failed_payment_notify(adapter, provider_key):
    result = await adapter.handle_notify(_notify_body(provider_key, respCode="51"))
    assert not result.success
    assert result.trade_status is TradeStatus.PAYERROR


@pytest.mark.asyncio
async def test_tampered_notify_is_rejected(adapter, provider_key):
    body = _notify_body(provider_key).replace(b"txnAmt=1234", b"txnAmt=1")
    with pytest.raises(PaymentSignatureError):
        await adapter.handle_notify(body)


@pytest.mark.asyncio
async def test_notify_for_other_merchant_is_rejected(adapter, provider_key):
    with pytest.raises(InvalidNotifyError):
        await adapter.handle_notify(_notify_body(provider_key, merId="000000000000000"))


def _refund_notify_body(provider_key, **overrides) -> bytes:
    return _notify_body(
        provider_key,
        txnType="04",
        orderId="R-1",
        queryId="RQ-1",
        origQryId="Q-1",
        txnAmt="500",
        **overrides,
    )


@pytest.mark.asyncio
async def test_refund_notify_updates_original_order(adapter, upstream, provider_key):
    upstream.reply(
        "queryTrans.do",
        respCode="00",
        origRespCode="00",
        queryId="Q-1",
        orderId="T-2001",
        txnAmt="1234",
        txnTime="20240102150405",
    )
    store = InMemoryOrderStateStore()
    await store.transition("T-2001", TradeStatus.SUCCESS)

    result = await adapter.handle_notify(_refund_notify_body(provider_key))
    await OrderStateNotifyProcessor(store).process(result)

    assert upstream.requests[0][1]["queryId"] == "Q-1"
    assert result.success
    assert result.out_trade_no == "T-2001"
    assert result.trade_status is TradeStatus.REFUND
    assert result.total_amount == Decimal("12.34")
    assert await store.get("T-2001") is TradeStatus.REFUND
    assert await store.get("R-1") is None


@pytest.mark.asyncio
async def test_failed_refund_notify_reports_current_order_state(adapter, upstream, provider_key):
    upstream.reply("queryTrans.do", respCode="00", origRespCode="00", queryId="Q-1", orderId="T-2001", txnAmt="1234")
    result = await adapter.handle_notify(_refund_notify_body(provider_key, respCode="30"))
    assert result.out_trade_no == "T-2001"
    assert result.trade_status is TradeStatus.SUCCESS


@pytest.mark.asyncio
async def test_refund_notify_without_original_reference_is_rejected(adapter, upstream, provider_key):
    body = _notify_body(provider_key, txnType="04", orderId="R-1")
    with pytest.raises(InvalidNotifyError):
        await adapter.handle_notify(body)
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_notify_for_other_transaction_type_is_rejected(adapter, provider_key):
    with pytest.raises(InvalidNotifyError):
        await adapter.handle_notify(_notify_body(provider_key, txnType="31"))
