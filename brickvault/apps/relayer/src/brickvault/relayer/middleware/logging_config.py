"""structlog 配置模块

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出
可选 LogBuffer processor：最近日志进入内存缓冲，供 /api/logs 查询。
"""

import logging

import structlog
from brickvault.core.config import LoggingConfig

from ..services.log_buffer import LogBuffer


def setup_logging(config: LoggingConfig, log_buffer: LogBuffer | None = None) -> None:
    """初始化 structlog 配置

    Args:
        config: 日志配置（level / format）
        log_buffer: 内存日志缓冲，None 时不采集
    """
    log_level = getattr(logging, config.level.upper(), logging.INFO)

    # 基础处理器链
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if config.format == "json":
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    buffer_processors: list[structlog.types.Processor] = [log_buffer] if log_buffer else []

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            *buffer_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # 配置标准库 logging（uvicorn 等第三方日志同样经过 renderer）
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # web3 / httpx 的请求级日志过于嘈杂
    for noisy in ("web3", "httpx", "httpcore", "urllib3"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))
