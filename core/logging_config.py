"""
Structlog 日志配置模块

structlog 与标准库 logging 共用一条处理链：DEBUG 下输出彩色控制台格式，
其它环境输出单行 JSON。请求上下文（request_id/client_ip/method/path）通过
contextvars 合并进每一条日志。
"""
import logging
import json
import structlog
from structlog.processors import TimeStamper, add_log_level, JSONRenderer
from structlog.dev import ConsoleRenderer
from structlog.contextvars import merge_contextvars
from structlog.stdlib import ProcessorFormatter
from typing import Any, List, Mapping

from core.config import settings


# 日志中需要脱敏的字段（请求体与支付参数）
SENSITIVE_KEYS = frozenset({
    "sign",
    "signature",
    "paysign",
    "private_key",
    "api_v3_key",
    "secret",
    "token",
    "access_token",
    "password",
    "certid",
})


def mask_sensitive(data: Any) -> Any:
    """递归地把敏感字段替换为 ``***``，其余值原样返回。"""
    if isinstance(data, Mapping):
        return {
            k: ("***" if str(k).lower() in SENSITIVE_KEYS else mask_sensitive(v))
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive(v) for v in data)
    return data


def get_renderer() -> Any:
    """根据环境选择渲染器 (Console in DEBUG, JSON otherwise)."""
    if settings.DEBUG:
        return ConsoleRenderer(colors=True)

    # structlog 会向 serializer 传入 default/sort_keys 等参数，Decimal 等类型回退为 str
    def _dumps(obj, default=None, **kwargs):
        return json.dumps(obj, ensure_ascii=False, default=default or str, **kwargs)
    return JSONRenderer(serializer=_dumps)


def configure_logging(level: int | None = None) -> None:
    """配置 structlog 并桥接标准库 logging 到同一处理链。"""
    shared_pre_chain: List[Any] = [
        merge_contextvars,
        add_log_level,
        structlog.stdlib.add_logger_name,
        TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *shared_pre_chain,
            ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = ProcessorFormatter(
        foreign_pre_chain=shared_pre_chain,
        processors=[
            ProcessorFormatter.remove_processors_meta,
            get_renderer(),
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    if level is None:
        level = logging.DEBUG if settings.DEBUG else logging.INFO
    root.setLevel(level)

    # 第三方 SDK 的调试日志过于冗长
    for noisy in ("httpx", "httpcore", "urllib3"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取 structlog logger 实例。"""
    return structlog.get_logger(name)
