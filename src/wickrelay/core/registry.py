# src/wickrelay/core/registry.py
from __future__ import annotations

from typing import Iterator, List

from wickrelay.core import log
from wickrelay.core.contracts import Handler, Hook
from wickrelay.core.metrics import gauge_set


class HookRegistry:
    """Append-only, insertion-ordered list of hooks.

    Several hooks may share a type; ``lookup`` returns them in the order they
    were registered, which is also the order of results in a fan-out reply.
    """

    def __init__(self, name: str = "wickrelay.registry"):
        self.l = log.get(name)
        self._hooks: List[Hook] = []

    def register(self, type: str, handler: Handler) -> None:
        if not callable(handler):
            raise TypeError(f"hook handler for type={type!r} is not callable: {handler!r}")
        self._hooks.append(Hook(type=type, handler=handler))
        self.l.info("hook registered type=%s fn=%s", type, getattr(handler, "__name__", repr(handler)))
        gauge_set("relay_hooks", float(len(self._hooks)))

    def lookup(self, type: str) -> List[Handler]:
        # exact, case-sensitive; a new list so later registrations don't leak in
        return [h.handler for h in self._hooks if h.type == type]

    def types(self) -> List[str]:
        seen: List[str] = []
        for h in self._hooks:
            if h.type not in seen:
                seen.append(h.type)
        return seen

    def __iter__(self) -> Iterator[Hook]:
        return iter(list(self._hooks))

    def __len__(self) -> int:
        return len(self._hooks)
