import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_payment_settings
from application.services.notify_manager import NotifyManager
from application.services.notify_processors import OrderStateNotifyProcessor
from application.services.payment_gateway import PaymentGateway
from core.settings import PaymentSettings, PaymentTimeouts, WebhookSettings
from domain.payment.enums import ChannelType, TradeStatus
from domain.payment.exceptions import PaymentSignatureError
from infrastructure.repositories.order_state_store import InMemoryOrderStateStore
from main import create_app
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


PAY_BODY = {
    "channel": "wechat",
    "out_trade_no": "T-1001",
    "total_amount": "0.01",
    "subject": "Coffee",
    "scene": "native",
}


@pytest.fixture
def store():
    return InMemoryOrderStateStore()


@pytest.fixture
def build_client(store):
    clients = []

    def _build(*adapters, settings=None):
        app = create_app()
        gateway = PaymentGateway(adapters)
        manager = NotifyManager(gateway)
        manager.register_processor("order_state", OrderStateNotifyProcessor(store))
        app.state.payment_gateway = gateway
        app.state.notify_manager = manager
        if settings is not None:
            app.dependency_overrides[get_payment_settings] = lambda: settings
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _build
    for client in clients:
        client.__exit__(None, None, None)


def test_health(build_client):
    resp = build_client().get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}


def test_channels_lists_registered_adapters(build_client, fake_adapter):
    client = build_client(fake_adapter(ChannelType.WECHAT), fake_adapter(ChannelType.UNIONPAY))
    assert client.get("/api/v1/channels").json()["data"] == {"channels": ["wechat", "unionpay"]}


def test_pay_success_envelope(build_client, fake_adapter):
    client = build_client(fake_adapter(ChannelType.WECHAT))
    resp = client.post("/api/v1/pay", json=PAY_BODY, headers={"X-Request-ID": "req-123"})

    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "req-123"
    body = resp.json()
    assert body["code"] == 0
    assert body["data"]["channel"] == "wechat"
    assert body["data"]["qr_code"] == "weixin://wxpay/bizpayurl?pr=abc"


def test_unknown_channel_is_rejected(build_client, fake_adapter):
    wechat = fake_adapter(ChannelType.WECHAT)
    client = build_client(wechat)
    resp = client.post("/api/v1/pay", json={**PAY_BODY, "channel": "paypal"})

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == PaymentCode.UNSUPPORTED_CHANNEL
    assert body["error"]["type"] == "UnsupportedChannel"
    assert body["error"]["field"] == "channel"
    assert wechat.calls == []


def test_refund_validation_error(build_client, fake_adapter):
    client = build_client(fake_adapter(ChannelType.WECHAT))
    resp = client.post(
        "/api/v1/refund",
        json={
            "channel": "wechat",
            "out_trade_no": "T-1001",
            "out_refund_no": "R-1",
            "refund_amount": "2.00",
            "total_amount": "1.00",
        },
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == BusinessCode.PARAM_VALIDATION_ERROR


def test_query_and_close(build_client, fake_adapter):
    client = build_client(fake_adapter(ChannelType.WECHAT))
    query = client.post("/api/v1/query", json={"channel": "wechat", "out_trade_no": "T-1001"}).json()
    assert query["data"]["trade_status"] == "SUCCESS"
    assert query["data"]["total_amount"] == "0.01"

    close = client.post("/api/v1/close", json={"channel": "wechat", "out_trade_no": "T-1001"}).json()
    assert close["code"] == 0
    assert close["data"]["out_trade_no"] == "T-1001"


def test_slow_provider_times_out(build_client, fake_adapter):
    settings = PaymentSettings(timeouts=PaymentTimeouts(operation=0.05))
    client = build_client(fake_adapter(ChannelType.WECHAT, delay=1.0), settings=settings)
    resp = client.post("/api/v1/pay", json=PAY_BODY)
    assert resp.status_code == 504
    assert resp.json()["code"] == PaymentCode.TIMEOUT


def test_verified_notify_updates_order_state(build_client, fake_adapter, notify_result, store):
    client = build_client(fake_adapter(ChannelType.WECHAT, notify_result=notify_result))
    resp = client.post("/api/v1/notify/wechat", content=b'{"resource": {}}')

    assert resp.status_code == 200
    assert resp.json() == {"code": "SUCCESS", "message": "OK"}
    assert store._states["T-1001"] is TradeStatus.SUCCESS


def test_tampered_notify_has_no_side_effects(build_client, fake_adapter, store):
    adapter = fake_adapter(ChannelType.WECHAT, notify_error=PaymentSignatureError("bad signature", channel="wechat"))
    client = build_client(adapter)
    resp = client.post("/api/v1/notify/wechat", content=b"{}")

    assert resp.status_code == 400
    assert resp.json()["code"] == "FAIL"
    assert store._states == {}


def test_notify_from_unlisted_ip_is_forbidden(build_client, fake_adapter, notify_result):
    adapter = fake_adapter(ChannelType.WECHAT, notify_result=notify_result)
    settings = PaymentSettings(webhook=WebhookSettings(ip_allowlist=["10.0.0.0/8"]))
    client = build_client(adapter, settings=settings)
    resp = client.post("/api/v1/notify/wechat", content=b"{}")

    assert resp.status_code == 403
    assert resp.json() == {"code": "FAIL", "message": "forbidden"}
    assert adapter.calls == []
