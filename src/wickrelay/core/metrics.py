from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

# (name, sorted label pairs)
Key = Tuple[str, Tuple[Tuple[str, str], ...]]

_HIST_WINDOW = 1024

_lock = threading.Lock()
_counters: Dict[Key, float] = {}
_gauges: Dict[Key, float] = {}
_hists: Dict[Key, Deque[float]] = {}


def _key(name: str, labels: Dict[str, Any]) -> Key:
    return name, tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def inc(name: str, n: float = 1.0, **labels: Any) -> None:
    k = _key(name, labels)
    with _lock:
        _counters[k] = _counters.get(k, 0.0) + n


def gauge_set(name: str, v: float, **labels: Any) -> None:
    with _lock:
        _gauges[_key(name, labels)] = float(v)


def observe_hist(name: str, v: float, **labels: Any) -> None:
    k = _key(name, labels)
    with _lock:
        _hists.setdefault(k, deque(maxlen=_HIST_WINDOW)).append(float(v))


def counter_value(name: str, **labels: Any) -> float:
    with _lock:
        return _counters.get(_key(name, labels), 0.0)


class Timer:
    """Records the elapsed milliseconds of a ``with`` block into a histogram."""
    def __init__(self, hist_name: str, **labels: Any) -> None:
        self.hist_name = hist_name
        self.labels = labels
        self._t0 = 0.0

    def __enter__(self):
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        observe_hist(self.hist_name, (time.perf_counter() - self._t0) * 1000.0, **self.labels)
        return False


def _fmt_labels(labels) -> str:
    return ",".join(f"{k}={v}" for k, v in labels)


def report_lines() -> List[str]:
    """One line per metric, e.g. ``relay_dispatch_ms{type=echo} n=3 p50=0.2 p99=1.1 max=1.1``."""
    with _lock:
        counters = sorted(_counters.items())
        gauges = sorted(_gauges.items())
        hists = sorted((k, sorted(v)) for k, v in _hists.items())

    lines = [f"{name}{{{_fmt_labels(lb)}}} {v:.0f}" for (name, lb), v in counters]
    lines += [f"{name}{{{_fmt_labels(lb)}}} {v:g}" for (name, lb), v in gauges]
    for (name, lb), vals in hists:
        if not vals:
            continue
        p50 = vals[len(vals) // 2]
        p99 = vals[min(len(vals) - 1, int(len(vals) * 0.99))]
        lines.append(f"{name}{{{_fmt_labels(lb)}}} n={len(vals)} p50={p50:.3f} p99={p99:.3f} max={vals[-1]:.3f}")
    return lines


# ---------------- Exporter (log every N seconds) ----------------

class _Exporter(threading.Thread):
    def __init__(self, interval_sec: float, logger: logging.Logger):
        super().__init__(name="metrics-exporter", daemon=True)
        self.interval = max(0.5, float(interval_sec))
        self.log = logger
        self._stop_evt = threading.Event()

    def run(self) -> None:
        while not self._stop_evt.wait(self.interval):
            for line in report_lines():
                self.log.info(line)


_EXPORTER: Optional[_Exporter] = None


def start_exporter(interval_sec: float = 5.0, logger: Optional[logging.Logger] = None) -> None:
    global _EXPORTER
    if _EXPORTER is not None:
        return
    _EXPORTER = _Exporter(interval_sec, logger or logging.getLogger("wickrelay.metrics"))
    _EXPORTER.start()


def stop_exporter(timeout: float = 1.0) -> None:
    global _EXPORTER
    if _EXPORTER is not None:
        _EXPORTER._stop_evt.set()
        _EXPORTER.join(timeout=timeout)
        _EXPORTER = None
