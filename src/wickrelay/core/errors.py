from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by wickrelay."""


class ConfigError(RelayError):
    pass


class FrameError(RelayError):
    """A wire frame could not be decoded into an event."""


class RelayConnectionError(RelayError):
    """The connection to the relay is missing or was lost."""


class HookFailedError(RelayError):
    """A request was answered with an error reply.

    ``detail`` is the ``error`` mapping from the reply
    (``type``, ``index``, ``message``).
    """

    def __init__(self, request_id, detail: dict):
        self.request_id = request_id
        self.detail = dict(detail or {})
        super().__init__(
            f"hook #{self.detail.get('index')} for type={self.detail.get('type')!r} "
            f"failed: {self.detail.get('message')}"
        )
