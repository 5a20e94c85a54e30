"""领域层业务异常基类。

领域与基础设施只抛出 BusinessException 及其子类；core 层负责把业务码映射为
HTTP 状态并渲染统一响应，领域层不反向依赖 core。
"""
from __future__ import annotations

from typing import Optional


class BusinessException(Exception):
    """业务异常基类

    ``retryable`` 表示调用方用相同参数重试是否有意义（网络/超时类错误）。
    """

    retryable: bool = False

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={int(self.code)}, message={self.message!r})"
