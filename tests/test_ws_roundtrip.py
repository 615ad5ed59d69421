import asyncio
import json
import socket

import pytest
from websockets.asyncio.client import connect

from wickrelay.adapters.ws_client import RelayClient
from wickrelay.app import RelayApp
from wickrelay.config import RelayConfig
from wickrelay.core.errors import HookFailedError, RelayConnectionError


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _cfg(**kw) -> RelayConfig:
    base = dict(host="127.0.0.1", port=0, retry=0.05, broadcast_interval=0.1)
    base.update(kw)
    return RelayConfig(**base)


def _install_hooks(app: RelayApp, gate: asyncio.Event):
    app.register("echo", lambda x: x["value"] + 1)
    app.register("ping", lambda _: "a")
    app.register("ping", lambda _: "b")

    @app.hook("gated")
    async def gated(payload):
        await gate.wait()
        return payload

    @app.hook("boom")
    def boom(_):
        raise RuntimeError("kaput")


@pytest.mark.asyncio
async def test_ws_request_reply_and_broadcast():
    gate = asyncio.Event()
    app = RelayApp(_cfg())
    _install_hooks(app, gate)
    await app.start()

    images = []
    got_image = asyncio.Event()

    def on_image(type_, name):
        images.append((type_, name))
        got_image.set()

    client = RelayClient(app.cfg.override(port=app.port))
    client.on_broadcast("image", on_image)
    await client.connect()
    try:
        assert await client.request("echo", {"value": 5}, timeout=2) == 6
        assert await client.request("ping", timeout=2) == ["a", "b"]
        assert await client.request("nobody", {"x": 1}, timeout=2) == []

        with pytest.raises(HookFailedError) as ei:
            await client.request("boom", timeout=2)
        assert ei.value.detail["message"] == "kaput"
        assert ei.value.detail["index"] == 0

        # slow request does not hold back a later fast one
        slow = asyncio.create_task(client.request("gated", "late", timeout=2))
        assert await client.request("echo", {"value": 1}, timeout=2) == 2
        assert not slow.done()
        gate.set()
        assert await slow == "late"

        await asyncio.wait_for(got_image.wait(), timeout=2)
        assert images[0][0] == "image"
        assert images[0][1].endswith(".png")
    finally:
        await client.close()
        await app.stop()


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped_and_connection_survives():
    app = RelayApp(_cfg(broadcast_interval=60))
    app.register("echo", lambda x: x)
    await app.start()
    try:
        async with connect(f"ws://127.0.0.1:{app.port}") as ws:
            await ws.send("not json")
            await ws.send(json.dumps({"type": "app.unknown", "data": {}}))
            await ws.send(json.dumps({"type": "app.send_message", "data": {"no_type": True}}))
            await ws.send(json.dumps({"type": "app.send_message",
                                      "data": {"type": "echo", "data": 42, "request_id": 7}}))
            reply = json.loads(await asyncio.wait_for(ws.recv(), timeout=2))
        assert reply == {"type": "app.receive_message", "data": {"data": 42, "request_id": 7}}
    finally:
        await app.stop()


@pytest.mark.asyncio
async def test_unserializable_result_still_gets_a_reply():
    app = RelayApp(_cfg(broadcast_interval=60))
    app.register("obj", lambda _: object())
    await app.start()
    client = RelayClient(app.cfg.override(port=app.port))
    await client.connect()
    try:
        with pytest.raises(HookFailedError) as ei:
            await client.request("obj", timeout=2)
        assert "not serializable" in ei.value.detail["message"]
    finally:
        await client.close()
        await app.stop()


@pytest.mark.asyncio
async def test_client_retries_until_server_is_up():
    port = _free_port()
    cfg = _cfg(port=port, broadcast_interval=60)
    client = RelayClient(cfg)
    connecting = asyncio.create_task(client.connect())
    await asyncio.sleep(0.15)
    assert not connecting.done()

    app = RelayApp(cfg)
    app.register("echo", lambda x: x)
    await app.start()
    try:
        await asyncio.wait_for(connecting, timeout=2)
        assert client.connected
        assert await client.request("echo", "hi", timeout=2) == "hi"
    finally:
        await client.close()
        await app.stop()


@pytest.mark.asyncio
async def test_stop_drains_inflight_requests_before_closing():
    app = RelayApp(_cfg(broadcast_interval=60))

    @app.hook("slow")
    async def slow(_):
        await asyncio.sleep(0.1)
        return "slept"

    await app.start()
    client = RelayClient(app.cfg.override(port=app.port))
    await client.connect()
    try:
        pending = asyncio.create_task(client.request("slow", timeout=2))
        await asyncio.sleep(0.02)
        await app.stop()
        assert await pending == "slept"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_pending_request_fails_when_connection_drops():
    app = RelayApp(_cfg(broadcast_interval=60))

    @app.hook("hung")
    async def hung(_):
        await asyncio.Event().wait()

    await app.start()
    client = RelayClient(app.cfg.override(port=app.port))
    await client.connect()
    try:
        pending = asyncio.create_task(client.request("hung", timeout=2))
        await asyncio.sleep(0.05)
        await app.stop(drain_timeout=0.05)
        with pytest.raises(RelayConnectionError):
            await pending
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_request_without_connection_raises():
    client = RelayClient(_cfg())
    with pytest.raises(RelayConnectionError):
        await client.request("echo", 1)


@pytest.mark.asyncio
async def test_client_close_releases_server_connection():
    app = RelayApp(_cfg(broadcast_interval=60))
    await app.start()
    client = RelayClient(app.cfg.override(port=app.port))
    await client.connect()
    try:
        for _ in range(50):
            if app.server.clients == 1:
                break
            await asyncio.sleep(0.01)
        assert app.server.clients == 1

        await client.close()

        for _ in range(50):
            if app.server.clients == 0:
                break
            await asyncio.sleep(0.01)
        assert app.server.clients == 0
        assert not client.connected
    finally:
        await app.stop()


@pytest.mark.asyncio
async def test_slow_broadcast_callback_does_not_delay_replies():
    app = RelayApp(_cfg(broadcast_interval=60))
    app.register("echo", lambda x: x)
    await app.start()

    release = asyncio.Event()
    entered = asyncio.Event()

    async def slow_callback(type_, data):
        entered.set()
        await release.wait()

    client = RelayClient(app.cfg.override(port=app.port))
    client.on_broadcast("news", slow_callback)
    await client.connect()
    try:
        for _ in range(50):
            if app.server.clients == 1:
                break
            await asyncio.sleep(0.01)
        await app.broadcast_message("news", "extra")
        await asyncio.wait_for(entered.wait(), timeout=2)

        # callback still blocked, reply must get through anyway
        assert await client.request("echo", "hi", timeout=1) == "hi"
    finally:
        release.set()
        await client.close()
        await app.stop()
