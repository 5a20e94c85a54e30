"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Example: ``PAYMENT__ENABLED_CHANNELS='["wechat","unionpay"]'``,
``UNIONPAY__MER_ID=777290058110048``.
"""
from __future__ import annotations

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0
    # Upper bound applied by the HTTP layer around one gateway operation
    operation: float = 15.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post notifications


class OrderStateSettings(BaseModel):
    backend: Literal["memory", "redis"] = "memory"
    key_prefix: str = "payment:order_state"
    ttl_seconds: int = 7 * 24 * 3600


class AlipaySettings(BaseModel):
    app_id: Optional[str] = None
    private_key_path: Optional[str] = None
    alipay_public_key_path: Optional[str] = None
    gateway: str = "https://openapi.alipay.com/gateway.do"
    sign_type: str = "RSA2"
    notify_url: Optional[str] = None
    return_url: Optional[str] = None


class WechatSettings(BaseModel):
    appid: Optional[str] = None
    mch_id: Optional[str] = None
    mch_cert_serial_no: Optional[str] = None
    private_key_path: Optional[str] = None
    platform_cert_dir: Optional[str] = None
    api_v3_key: Optional[str] = None
    notify_url: Optional[str] = None


class UnionPaySettings(BaseModel):
    mer_id: Optional[str] = None
    app_id: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_password: Optional[str] = None
    public_key_path: Optional[str] = None
    # "sandbox", "prod" or an explicit base URL ending with "/"
    gateway: str = "sandbox"
    front_url: Optional[str] = None
    back_url: Optional[str] = None


class PaymentSettings(BaseSettings):
    enabled_channels: list[str] = Field(default_factory=list, validation_alias="PAYMENT__ENABLED_CHANNELS")
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    order_state: OrderStateSettings = Field(default_factory=OrderStateSettings)

    alipay: AlipaySettings = Field(default_factory=AlipaySettings)
    wechat: WechatSettings = Field(default_factory=WechatSettings)
    unionpay: UnionPaySettings = Field(default_factory=UnionPaySettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
        populate_by_name=True,
    )

    @field_validator("enabled_channels", mode="before")
    @classmethod
    def _split_channels(cls, v):
        if isinstance(v, str):
            return [item.strip().lower() for item in v.split(",") if item.strip()]
        return [str(item).strip().lower() for item in v or []]


payment_settings = PaymentSettings()
