# src/wickrelay/core/dispatcher.py
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, List, Optional, Set

from wickrelay.core import log
from wickrelay.core.contracts import (
    BROADCAST,
    RECEIVE_MESSAGE,
    BroadcastEvent,
    Handler,
    InboundRequest,
    OutboundReply,
    Transport,
)
from wickrelay.core.errors import RelayError
from wickrelay.core.metrics import Timer, gauge_set, inc
from wickrelay.core.registry import HookRegistry


def collapse_results(results: List[Any]) -> Any:
    """Exactly one result is sent bare; zero or several go out as a list.

    Clients rely on this shape, including ``[]`` when nothing matched.
    """
    if len(results) == 1:
        return results[0]
    return list(results)


async def _invoke(handler: Handler, payload: Any) -> Any:
    result = handler(payload)
    if inspect.isawaitable(result):
        result = await result
    return result


class Dispatcher:
    """Routes ``send_message`` requests to hooks and replies to the sender.

    Every matched hook runs in its own task; the reply goes out once all of
    them have settled. If any hook failed the reply carries ``data: None``
    and an ``error`` describing the first failed hook in registration order.
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        registry: Optional[HookRegistry] = None,
        name: str = "wickrelay.dispatcher",
    ):
        self.transport = transport
        self.registry = registry if registry is not None else HookRegistry()
        self.l = log.get(name)
        self._inflight: Set[asyncio.Task] = set()

    def attach(self, transport: Transport) -> None:
        self.transport = transport

    # ---- registration -------------------------------------------------------
    def register(self, type: str, handler: Handler) -> None:
        self.registry.register(type, handler)

    def hook(self, type: str) -> Callable[[Handler], Handler]:
        """Decorator form of ``register``."""
        def deco(fn: Handler) -> Handler:
            self.register(type, fn)
            return fn
        return deco

    # ---- request path -------------------------------------------------------
    async def run_hooks(self, request: InboundRequest) -> OutboundReply:
        handlers = self.registry.lookup(request.type)
        tasks = [asyncio.ensure_future(_invoke(h, request.data)) for h in handlers]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for idx, t in enumerate(tasks):
            if t.cancelled():
                err: BaseException = asyncio.CancelledError("hook cancelled")
            else:
                err = t.exception()
            if err is None:
                continue
            inc("relay_hook_errors_total", 1, type=request.type)
            self.l.error(
                "hook failed type=%s index=%d request_id=%r err=%s",
                request.type, idx, request.request_id, err, exc_info=err,
            )
            return OutboundReply(
                data=None,
                request_id=request.request_id,
                error={"type": request.type, "index": idx, "message": str(err) or type(err).__name__},
            )

        return OutboundReply(data=collapse_results([t.result() for t in tasks]), request_id=request.request_id)

    async def handle_request(self, request: InboundRequest, conn: Any) -> None:
        if self.transport is None:
            raise RelayError("dispatcher has no transport attached")
        inc("relay_requests_total", 1, type=request.type)
        with Timer("relay_dispatch_ms", type=request.type):
            reply = await self.run_hooks(request)
        await self.transport.emit(conn, RECEIVE_MESSAGE, reply.to_dict())
        inc("relay_replies_total", 1, type=request.type)
        self.l.debug("reply sent type=%s request_id=%r error=%s", request.type, request.request_id, reply.error is not None)

    def submit(self, request: InboundRequest, conn: Any) -> asyncio.Task:
        """Handle a request in its own task so requests overlap."""
        task = asyncio.create_task(self.handle_request(request, conn), name=f"request-{request.request_id}")
        self._inflight.add(task)
        gauge_set("relay_inflight", float(len(self._inflight)))
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        gauge_set("relay_inflight", float(len(self._inflight)))
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            self.l.error("request task %s failed: %s", task.get_name(), err, exc_info=err)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight requests; cancel whatever is left after timeout."""
        pending = list(self._inflight)
        if not pending:
            return
        self.l.info("draining %d in-flight request(s)", len(pending))
        done, still = await asyncio.wait(pending, timeout=timeout)
        for t in still:
            t.cancel()
        if still:
            await asyncio.gather(*still, return_exceptions=True)
            self.l.warning("cancelled %d request(s) still running after drain", len(still))

    # ---- broadcast ----------------------------------------------------------
    async def broadcast_message(self, type: str, data: Any) -> None:
        if self.transport is None:
            raise RelayError("dispatcher has no transport attached")
        await self.transport.broadcast(BROADCAST, BroadcastEvent(type=type, data=data).to_dict())
        inc("relay_broadcast_total", 1, type=type)
        self.l.debug("broadcast type=%s data=%r", type, data)
