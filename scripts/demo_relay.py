# scripts/demo_relay.py
"""Start a relay with a few hooks, then talk to it with a client.

Also usable as a hook module: ``wickrelay --hooks scripts.demo_relay:setup``.
"""
import asyncio
import os

from wickrelay.adapters.ws_client import RelayClient
from wickrelay.app import RelayApp
from wickrelay.config import load_config
from wickrelay.core import log
from wickrelay.core.metrics import report_lines

lg = log.get("demo")


def setup(dispatcher):
    dispatcher.register("echo", lambda x: x["value"] + 1)
    dispatcher.register("ping", lambda _: "a")
    dispatcher.register("ping", lambda _: "b")

    @dispatcher.hook("slow")
    async def slow(payload):
        await asyncio.sleep(float(payload or 0.2))
        return "slept"


async def run():
    cfg = load_config(host="127.0.0.1", port=int(os.getenv("RELAY_PORT", "0")), broadcast_interval=2.0)
    app = RelayApp(cfg)
    setup(app.dispatcher)
    await app.start()

    client = RelayClient(cfg.override(port=app.port))
    client.on_broadcast("image", lambda t, name: lg.info("broadcast %s -> %s", t, name))
    await client.connect()
    try:
        lg.info("echo -> %r", await client.request("echo", {"value": 5}))
        lg.info("ping -> %r", await client.request("ping"))
        lg.info("nobody -> %r", await client.request("nobody"))
        slow, fast = await asyncio.gather(client.request("slow", 0.5), client.request("echo", {"value": 1}))
        lg.info("overlapping -> slow=%r fast=%r", slow, fast)
        await asyncio.sleep(2.5)  # catch one image broadcast
    finally:
        await client.close()
        await app.stop()
    for line in report_lines():
        lg.info(line)


def main():
    log.setup()
    asyncio.run(run())


if __name__ == "__main__":
    main()
