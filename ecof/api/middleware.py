"""
Correlation id for API requests.

Taken from X-Request-Id (or X-Trace-Id) when the caller sends one,
generated otherwise, and echoed back on the response.
"""

import uuid

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from core.logging import correlation

REQUEST_ID_HEADER = "X-Request-Id"
TRACE_ID_HEADER = "X-Trace-Id"


class CorrelationIdMiddleware:
    def __init__(self, app: ASGIApp, header: str = REQUEST_ID_HEADER):
        self.app = app
        self.header = header

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        value = headers.get(self.header) or headers.get(TRACE_ID_HEADER) or uuid.uuid4().hex[:12]

        async def send_with_header(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[self.header] = value
            await send(message)

        with correlation(value):
            await self.app(scope, receive, send_with_header)
