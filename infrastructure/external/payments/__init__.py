"""
Factory for payment channel adapters.

This is the only place that switches on channel names; everything after
startup dispatches through the ChannelAdapter protocol.
"""
from __future__ import annotations

from typing import Optional

from core.settings import PaymentSettings, payment_settings
from application.ports.payment_gateway import ChannelAdapter
from domain.payment.enums import ChannelType


def get_channel_adapter(channel: str, settings: Optional[PaymentSettings] = None) -> ChannelAdapter:
    cfg = settings or payment_settings
    try:
        name = ChannelType.parse(channel)
    except ValueError:
        raise ValueError(f"Unsupported payment channel: {channel}") from None
    if name is ChannelType.WECHAT:
        from .wechatpay_client import WechatPayAdapter
        return WechatPayAdapter.from_settings(cfg)
    if name is ChannelType.ALIPAY:
        from .alipay_client import AlipayAdapter
        return AlipayAdapter.from_settings(cfg)
    from .unionpay_client import UnionPayAdapter
    return UnionPayAdapter.from_settings(cfg)


def build_channel_adapters(settings: Optional[PaymentSettings] = None) -> list[ChannelAdapter]:
    """Build one adapter per enabled channel; incomplete configuration fails fast."""
    cfg = settings or payment_settings
    return [get_channel_adapter(name, cfg) for name in cfg.enabled_channels]
