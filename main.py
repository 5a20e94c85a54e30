"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from application.ports.order_state import OrderStateStore
from application.services.notify_manager import (
    JsonNotifyResponder,
    NotifyManager,
    PlainTextNotifyResponder,
)
from application.services.notify_processors import (
    LoggingNotifyProcessor,
    MetricsNotifyProcessor,
    OrderStateNotifyProcessor,
)
from application.services.payment_gateway import PaymentGateway
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import get_logger, configure_logging
from core.response import success_response
from core.settings import payment_settings
from domain.payment.enums import ChannelType
from infrastructure.external.payments import build_channel_adapters
from infrastructure.repositories.order_state_store import (
    InMemoryOrderStateStore,
    RedisOrderStateStore,
    create_redis_connection,
)


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


def build_order_state_store() -> OrderStateStore:
    cfg = payment_settings.order_state
    if cfg.backend == "redis":
        if not settings.redis.url:
            raise RuntimeError("PAYMENT order_state backend 'redis' requires REDIS__URL")
        client = create_redis_connection(settings.redis.url, max_connections=settings.redis.max_connections)
        return RedisOrderStateStore(client, key_prefix=cfg.key_prefix, ttl_seconds=cfg.ttl_seconds)
    return InMemoryOrderStateStore()


def build_notify_manager(
    gateway: PaymentGateway,
    *,
    store: OrderStateStore,
    registry: CollectorRegistry,
) -> NotifyManager:
    """装配通知管道：日志 -> 订单状态 -> 指标；支付宝使用纯文本应答。"""
    manager = NotifyManager(gateway, default_responder=JsonNotifyResponder())
    manager.register_responder(ChannelType.ALIPAY, PlainTextNotifyResponder())
    manager.register_processor("logging", LoggingNotifyProcessor(get_logger("payment.notify")))
    manager.register_processor("order_state", OrderStateNotifyProcessor(store))
    manager.register_processor("metrics", MetricsNotifyProcessor(registry))
    return manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：启动时构建网关与通知管道，关闭时释放渠道资源"""
    registry: CollectorRegistry = app.state.metrics_registry
    store: Optional[OrderStateStore] = None

    if getattr(app.state, "payment_gateway", None) is None:
        adapters = build_channel_adapters(payment_settings)
        app.state.payment_gateway = PaymentGateway(adapters, strict=True)
    gateway: PaymentGateway = app.state.payment_gateway
    logger.info(
        "payment_gateway_initialized",
        channels=[c.value for c in gateway.get_supported_channels()],
    )

    if getattr(app.state, "notify_manager", None) is None:
        store = build_order_state_store()
        app.state.notify_manager = build_notify_manager(gateway, store=store, registry=registry)
        logger.info("notify_manager_initialized", backend=payment_settings.order_state.backend)

    yield

    await gateway.aclose()
    if isinstance(store, RedisOrderStateStore):
        await store.aclose()
    logger.info("application_shutdown", message="Application shutdown")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
        description="统一支付网关：微信支付 / 支付宝 / 银联",
    )
    app.state.metrics_registry = CollectorRegistry()

    # 添加中间件（注意顺序：后添加的先执行）
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(payments_routes.router, prefix="/api/v1")

    @app.get("/api/v1/health", tags=["Health"])
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        """健康检查端点"""
        return success_response(data={"status": "healthy"}, message="ok")

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request):
        payload = generate_latest(request.app.state.metrics_registry)
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
