# src/wickrelay/adapters/ws_client.py
from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from wickrelay.config import RelayConfig
from wickrelay.core.contracts import (
    BROADCAST,
    RECEIVE_MESSAGE,
    SEND_MESSAGE,
    decode_frame,
    encode_frame,
    local_event,
    wire_event,
)
from wickrelay.core.errors import FrameError, HookFailedError, RelayConnectionError

log = logging.getLogger(__name__)

BroadcastHandler = Callable[[str, Any], Union[None, Awaitable[None]]]

ANY = "*"


class RelayClient:
    """Client side of the relay.

    ``request`` sends ``send_message`` and resolves with the matching
    ``receive_message`` reply, correlated by a generated request_id.
    Broadcasts are routed to handlers registered with ``on_broadcast``.
    The connection is retried every ``cfg.retry`` seconds until it is up,
    and again after it drops.
    """

    def __init__(self, cfg: Optional[RelayConfig] = None):
        self.cfg = cfg or RelayConfig()
        self._ws: Optional[ClientConnection] = None
        self._subs: Dict[str, List[BroadcastHandler]] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._task_recv: Optional[asyncio.Task] = None
        self._callbacks: Set[asyncio.Task] = set()
        self._connected = asyncio.Event()
        self._closed = False

    async def __aenter__(self) -> "RelayClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        while not self._closed:
            try:
                log.info("relay connect %s", self.cfg.url)
                self._ws = await connect(self.cfg.url)
                self._connected.set()
                self._task_recv = asyncio.create_task(self._recv_loop(self._ws), name="relay-client-recv")
                return
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                log.warning("relay connect failed: %s; retry in %.1fs", e, self.cfg.retry)
                await asyncio.sleep(self.cfg.retry)

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def close(self) -> None:
        self._closed = True
        # the recv task clears self._ws on its way out
        ws = self._ws
        if self._task_recv:
            self._task_recv.cancel()
            await asyncio.gather(self._task_recv, return_exceptions=True)
            self._task_recv = None
        if ws is not None:
            await ws.close()
        self._ws = None
        for t in list(self._callbacks):
            t.cancel()
        await asyncio.gather(*self._callbacks, return_exceptions=True)
        self._fail_pending("client closed")

    def on_broadcast(self, type: str, handler: BroadcastHandler) -> None:
        """Call ``handler(type, data)`` for broadcasts of ``type`` ("*" for all)."""
        self._subs.setdefault(type, []).append(handler)

    async def request(self, type: str, data: Any = None, *, timeout: Optional[float] = None) -> Any:
        ws = self._ws
        if ws is None:
            raise RelayConnectionError("relay not connected")
        request_id = uuid.uuid4().hex
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            frame = encode_frame(
                wire_event(self.cfg.namespace, SEND_MESSAGE),
                {"type": type, "data": data, "request_id": request_id},
            )
            try:
                await ws.send(frame)
            except ConnectionClosed as e:
                raise RelayConnectionError(f"relay connection closed: {e}") from e
            reply = await asyncio.wait_for(fut, timeout)
        finally:
            self._pending.pop(request_id, None)

        if reply.get("error") is not None:
            raise HookFailedError(request_id, reply["error"])
        return reply.get("data")

    # ---- inbound ------------------------------------------------------------
    async def _recv_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                try:
                    await self._on_frame(raw)
                except FrameError as e:
                    log.warning("relay frame dropped: %s", e)
                except Exception as e:
                    log.exception("relay recv err: %s", e)
        except ConnectionClosed as e:
            log.info("relay connection closed: %s", e)
        finally:
            self._ws = None
            self._connected.clear()
            self._fail_pending("relay connection lost")
        # not reached when cancelled
        if not self._closed:
            log.info("relay disconnected; will reconnect")
            await self.connect()

    async def _on_frame(self, raw: Union[str, bytes]) -> None:
        event, data = decode_frame(raw)
        name = local_event(self.cfg.namespace, event)
        if name == RECEIVE_MESSAGE:
            if not isinstance(data, dict):
                raise FrameError("receive_message payload must be an object")
            fut = self._pending.get(data.get("request_id"))
            if fut is None or fut.done():
                log.debug("reply for unknown request_id=%r ignored", data.get("request_id"))
                return
            fut.set_result(data)
        elif name == BROADCAST:
            if not isinstance(data, dict):
                raise FrameError("broadcast payload must be an object")
            msg_type = data.get("type")
            for h in self._subs.get(msg_type, []) + self._subs.get(ANY, []):
                # off the recv loop so a slow callback cannot hold back replies
                t = asyncio.create_task(self._run_callback(h, msg_type, data.get("data")))
                self._callbacks.add(t)
                t.add_done_callback(self._callbacks.discard)
        else:
            log.debug("ignoring event %s", event)

    async def _run_callback(self, h: BroadcastHandler, msg_type: str, payload: Any) -> None:
        try:
            res = h(msg_type, payload)
            if inspect.isawaitable(res):
                await res
        except Exception as e:
            log.exception("broadcast callback %s failed: %s", getattr(h, "__name__", h), e)

    def _fail_pending(self, reason: str) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(RelayConnectionError(reason))
