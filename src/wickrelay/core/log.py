from __future__ import annotations

import json
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv

_configured = False


class JsonHandler(logging.StreamHandler):
    """One JSON object per line on stdout."""
    def __init__(self):
        super().__init__(stream=sys.stdout)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            obj = {
                "ts": record.created,
                "lvl": record.levelname,
                "name": record.name,
                "msg": record.getMessage(),
            }
            for k in ("filename", "lineno", "funcName"):
                obj[k] = getattr(record, k, None)
            if record.exc_info:
                obj["exc"] = logging.Formatter().formatException(record.exc_info)
            self.stream.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
            self.flush()
        except Exception:  # pragma: no cover
            self.handleError(record)


def setup(level: Optional[str] = None, json_mode: Optional[bool] = None, *, force: bool = False) -> None:
    """Configure root logger.
    - Reads LOG_LEVEL, LOG_JSON from env (and .env) if args are None
    - If already configured, do nothing unless force=True
    """
    global _configured
    if _configured and not force:
        return

    load_dotenv()

    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    py_level = getattr(logging, lvl, logging.INFO)
    if not isinstance(py_level, int):
        py_level = logging.INFO

    json_flag = json_mode if json_mode is not None else (os.getenv("LOG_JSON", "0") == "1")

    root = logging.getLogger()
    # Reset handlers to avoid duplicate logs (pytest re-runs etc.)
    root.handlers.clear()
    root.setLevel(py_level)

    if json_flag:
        root.addHandler(JsonHandler())
    else:
        fmt = "[%(asctime)s] %(levelname)s %(name)s | %(message)s"
        handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=fmt))
        root.addHandler(handler)

    # websockets logs every handshake at INFO
    logging.getLogger("websockets").setLevel(max(py_level, logging.WARNING))

    _configured = True


def get(name: str) -> logging.Logger:
    """Helper to get a namespaced logger."""
    return logging.getLogger(name)


def set_level(level: str) -> None:
    """Dynamically adjust root log level (e.g., during tests)."""
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger().setLevel(lvl if isinstance(lvl, int) else logging.INFO)
