# src/wickrelay/core/broadcaster.py
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Optional

from wickrelay.core.clock import BeatClock
from wickrelay.core.dispatcher import Dispatcher
from wickrelay.core.filename import image_file_name
from wickrelay.core.log import get as get_logger

log = get_logger(__name__)

IMAGE_EVENT = "image"


class ImageBroadcaster:
    """Broadcasts the current image file name to every client on a fixed interval."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        interval: float = 30.0,
        *,
        event_type: str = IMAGE_EVENT,
        name_fn: Callable[[Optional[datetime]], str] = image_file_name,
    ):
        self.dispatcher = dispatcher
        self.event_type = event_type
        self.name_fn = name_fn
        self.clock = BeatClock(interval=interval, name="broadcast.clock")
        self._task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        async for _ts, i in self.clock.ticks():
            try:
                await self.dispatcher.broadcast_message(self.event_type, self.name_fn(None))
            except Exception as e:
                log.exception("[broadcast] tick %d error: %s", i, e)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="image-broadcaster")
        return self._task

    async def stop(self) -> None:
        self.clock.stop()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
