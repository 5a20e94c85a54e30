"""
API依赖项 - 支付网关与通知管理器

网关与通知管理器在应用 lifespan 中构建一次并挂到 app.state 上，
测试可通过 app.dependency_overrides 替换。
"""
from fastapi import Request

from application.services.notify_manager import NotifyManager
from application.services.payment_gateway import PaymentGateway
from core.settings import PaymentSettings, payment_settings


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_notify_manager(request: Request) -> NotifyManager:
    return request.app.state.notify_manager


def get_payment_settings() -> PaymentSettings:
    return payment_settings
