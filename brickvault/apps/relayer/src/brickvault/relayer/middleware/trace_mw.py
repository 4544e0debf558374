"""TraceMiddleware -- 为消息操作绑定 message_id

/api/messages/{message_id}[/reset] 请求的日志都带上 message_id，
便于与派发日志（dispatch_* 事件同样携带 message_id）关联。
"""

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# "0x" + 64 位十六进制
_MESSAGE_ID_LENGTH = 66


class TraceMiddleware(BaseHTTPMiddleware):
    """消息级追踪中间件"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        parts = request.url.path.split("/")
        for i, part in enumerate(parts):
            if part == "messages" and i + 1 < len(parts):
                candidate = parts[i + 1]
                if len(candidate) == _MESSAGE_ID_LENGTH and candidate.startswith("0x"):
                    structlog.contextvars.bind_contextvars(message_id=candidate.lower())
                break

        return await call_next(request)
