"""
Request ID 中间件
生成或透传追踪ID，并通过 contextvars 绑定到 structlog，
使网关、适配器与通知处理器的日志都带上同一个 request_id。
"""
import re
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
import structlog


# 透传的追踪ID只接受安全字符，避免日志注入
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIDMiddleware(BaseHTTPMiddleware):
    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(self.HEADER_NAME) or ""
        request_id = incoming if _VALID_REQUEST_ID.match(incoming) else str(uuid.uuid4())
        client_ip = self._get_client_ip(request)

        request.state.request_id = request_id
        request.state.client_ip = client_ip

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response

    @staticmethod
    def _get_client_ip(request: Request) -> str:
        """客户端IP，仅用于日志；通知回调的 IP 白名单使用直连地址。"""
        x_forwarded_for = request.headers.get("X-Forwarded-For")
        if x_forwarded_for:
            return x_forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip
        return request.client.host if request.client else "unknown"
