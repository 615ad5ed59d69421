# src/wickrelay/adapters/ws_server.py
from __future__ import annotations

import logging
from typing import Any, Optional, Set, Union

from websockets.asyncio.server import Server, ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed

from wickrelay.config import RelayConfig
from wickrelay.core.contracts import (
    RECEIVE_MESSAGE,
    SEND_MESSAGE,
    InboundRequest,
    decode_frame,
    encode_frame,
    local_event,
    wire_event,
)
from wickrelay.core.dispatcher import Dispatcher
from wickrelay.core.errors import FrameError, RelayError
from wickrelay.core.metrics import gauge_set, inc

log = logging.getLogger(__name__)


class RelayServer:
    """websockets transport for a Dispatcher.

    Frames are JSON text ``{"type": "<ns>.<event>", "data": ...}``. Inbound
    ``send_message`` frames become requests; replies go back on the same
    connection and broadcasts go to every open connection.
    """

    def __init__(self, dispatcher: Dispatcher, cfg: Optional[RelayConfig] = None):
        self.cfg = cfg or RelayConfig()
        self.dispatcher = dispatcher
        self.dispatcher.attach(self)
        self._clients: Set[ServerConnection] = set()
        self._server: Optional[Server] = None

    # ---- lifecycle ----------------------------------------------------------
    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await serve(self._serve_client, self.cfg.host, self.cfg.port)
        log.info("relay id=%s listening on ws://%s:%d", self.cfg.id, self.cfg.host, self.port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        log.info("relay id=%s stopped", self.cfg.id)

    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""
        if self._server is None:
            return self.cfg.port
        return self._server.sockets[0].getsockname()[1]

    @property
    def clients(self) -> int:
        return len(self._clients)

    # ---- inbound ------------------------------------------------------------
    async def _serve_client(self, ws: ServerConnection) -> None:
        self._clients.add(ws)
        gauge_set("relay_clients", float(len(self._clients)))
        log.info("client connected %s (total=%d)", ws.remote_address, len(self._clients))
        try:
            async for raw in ws:
                self._on_frame(ws, raw)
        except ConnectionClosed as e:
            log.info("client %s closed: %s", ws.remote_address, e)
        finally:
            self._clients.discard(ws)
            gauge_set("relay_clients", float(len(self._clients)))
            log.info("client disconnected %s (total=%d)", ws.remote_address, len(self._clients))

    def _on_frame(self, ws: ServerConnection, raw: Union[str, bytes]) -> None:
        try:
            event, data = decode_frame(raw)
            name = local_event(self.cfg.namespace, event)
            if name != SEND_MESSAGE:
                raise FrameError(f"unexpected event {event!r}")
            request = InboundRequest.from_dict(data)
        except FrameError as e:
            inc("relay_frames_dropped_total", 1)
            log.warning("dropping frame from %s: %s", ws.remote_address, e)
            return
        self.dispatcher.submit(request, ws)

    # ---- Transport ----------------------------------------------------------
    async def emit(self, conn: Any, event: str, data: Any) -> None:
        wire = wire_event(self.cfg.namespace, event)
        try:
            frame = encode_frame(wire, data)
        except (TypeError, ValueError) as e:
            if event != RECEIVE_MESSAGE or not isinstance(data, dict):
                raise FrameError(f"cannot encode {event}: {e}") from e
            # the client is still waiting on this request_id
            log.error("reply for request_id=%r is not JSON serializable: %s", data.get("request_id"), e)
            frame = encode_frame(wire, {
                "data": None,
                "request_id": data.get("request_id"),
                "error": {"type": None, "index": None, "message": f"reply not serializable: {e}"},
            })
        try:
            await conn.send(frame)
        except ConnectionClosed:
            log.warning("client %s went away; %s dropped", getattr(conn, "remote_address", conn), event)

    async def broadcast(self, event: str, data: Any) -> None:
        if self._server is None:
            raise RelayError("relay server is not running")
        broadcast(self._clients, encode_frame(wire_event(self.cfg.namespace, event), data))
