"""ASGI middleware that flushes deferred increments once per request."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, MutableMapping

from starlette.concurrency import run_in_threadpool

from cache_stache.instrumentation.deferred import request_scope
from cache_stache.instrumentation.hook import InstrumentationHook

Scope = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[MutableMapping[str, Any]]]
Send = Callable[[MutableMapping[str, Any]], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


class DeferredFlushMiddleware:
    """Opens a deferred buffer per HTTP request and flushes it after the response.

    A pass-through unless the hook's configuration enables deferred flush.
    """

    def __init__(self, app: ASGIApp, hook: InstrumentationHook) -> None:
        self.app = app
        self.hook = hook

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.hook.config.use_deferred_flush:
            await self.app(scope, receive, send)
            return

        with request_scope() as buffer:
            try:
                await self.app(scope, receive, send)
            finally:
                store = self.hook.store
                if store is not None and len(buffer) > 0:
                    await run_in_threadpool(buffer.flush, store)
