"""
支付领域枚举 - 渠道、场景、交易状态
"""
from __future__ import annotations

from enum import Enum


class ChannelType(str, Enum):
    """支付渠道"""
    WECHAT = "wechat"
    ALIPAY = "alipay"
    UNIONPAY = "unionpay"

    @classmethod
    def parse(cls, value: "ChannelType | str") -> "ChannelType":
        """Normalize a raw channel value; raises ValueError when unknown."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


class PayScene(str, Enum):
    """支付场景"""
    APP = "app"          # 客户端 SDK 拉起
    H5 = "h5"            # 手机浏览器跳转
    JSAPI = "jsapi"      # 公众号 / 小程序
    NATIVE = "native"    # 扫码
    PC = "pc"            # 电脑网站


class TradeStatus(str, Enum):
    """统一交易状态（与渠道无关）"""
    SUCCESS = "SUCCESS"          # 支付成功
    REFUND = "REFUND"            # 转入退款
    NOTPAY = "NOTPAY"            # 未支付
    CLOSED = "CLOSED"            # 已关闭
    REVOKED = "REVOKED"          # 已撤销
    USERPAYING = "USERPAYING"    # 用户支付中
    PAYERROR = "PAYERROR"        # 支付失败

    @property
    def is_paid(self) -> bool:
        return self is TradeStatus.SUCCESS


class RefundStatus(str, Enum):
    """统一退款状态"""
    SUCCESS = "SUCCESS"
    PROCESSING = "PROCESSING"
    CLOSED = "CLOSED"
    ABNORMAL = "ABNORMAL"
