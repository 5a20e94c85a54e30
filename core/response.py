"""
统一响应信封

所有 JSON 接口返回 ``{code, message, data?, error?}``：``code == 0`` 表示成功，
支付渠道的业务拒绝同样以 HTTP 200 + 非零 PaymentCode 返回。
异步通知接口不使用信封，直接返回渠道要求的应答体。
"""
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer

from shared.codes import BusinessCode


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorDetail(BaseModel):
    type: str
    details: Optional[dict] = None
    field: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_serializer("timestamp")
    def _iso_utc(self, ts: datetime) -> str:
        # UTC ISO8601，以 Z 结尾
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class Response(BaseModel):
    code: int
    message: str
    data: Any = None
    error: Optional[ErrorDetail] = None


def success_response(data: Any = None, message: str = "Success", code: int = BusinessCode.SUCCESS) -> Response:
    return Response(code=int(code), message=message, data=data)


def error_response(
    code: int,
    message: str,
    error_type: str = "BusinessError",
    details: Optional[dict] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Response:
    """
    创建错误响应

    Args:
        code: 业务码（BusinessCode 或 PaymentCode）
        message: 可读错误信息
        error_type: 异常类型名，供客户端分支判断
        details: 附加信息（如 channel、provider_code）
        field: 出错的请求字段
        request_id: 追踪ID
    """
    error = ErrorDetail(type=error_type, details=details, field=field, request_id=request_id)
    return Response(code=int(code), message=message, error=error)
