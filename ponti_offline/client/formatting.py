"""Display helpers for offline state."""

import math
from datetime import datetime
from typing import Optional

SIZE_UNITS = ["B", "KB", "MB", "GB"]


def format_cache_size(size_bytes: int) -> str:
    """Human-readable cache size, e.g. ``1536`` -> ``"1.5 KB"``."""
    if size_bytes <= 0:
        return "0 B"
    i = min(int(math.floor(math.log(size_bytes, 1024))), len(SIZE_UNITS) - 1)
    size = size_bytes / math.pow(1024, i)
    return f"{size:.{0 if i == 0 else 1}f} {SIZE_UNITS[i]}"


def format_last_sync(date: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Relative time since the last sync, in Spanish."""
    if date is None:
        return "Nunca"

    now = now or datetime.now()
    minutes = int((now - date).total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24

    if minutes < 1:
        return "Ahora mismo"
    if minutes < 60:
        return f"Hace {minutes} min"
    if hours < 24:
        return f"Hace {hours} hora{'s' if hours != 1 else ''}"
    return f"Hace {days} día{'s' if days != 1 else ''}"
