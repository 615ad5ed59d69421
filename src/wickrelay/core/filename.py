from __future__ import annotations

from datetime import datetime
from typing import Optional


def image_file_name(now: Optional[datetime] = None) -> str:
    """``<year>_<month>_<day>.png`` in local time; month is zero-based (Jan == 0)."""
    now = now or datetime.now()
    return f"{now.year}_{now.month - 1}_{now.day}.png"
