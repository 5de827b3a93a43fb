"""Data models for Ponti Offline."""

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Data envelopes older than this are served with X-Cache-Status: stale
STALE_THRESHOLD_MS = 60 * 60 * 1000


@dataclass
class CachedResponse:
    """An HTTP response as fetched from the origin or stored in a cache store."""

    data: bytes
    headers: Dict[str, str]
    status_code: int
    stored_at: Optional[str] = None

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def json(self) -> Any:
        return json.loads(self.data.decode("utf-8"))

    def clone(self) -> "CachedResponse":
        return CachedResponse(
            data=bytes(self.data),
            headers=copy.deepcopy(self.headers),
            status_code=self.status_code,
            stored_at=self.stored_at,
        )


@dataclass
class CachedEnvelope:
    """Freshness wrapper around a cached data-API payload.

    ``timestamp`` is milliseconds since the epoch. Staleness is never stored,
    it is derived at read time with ``is_stale``.
    """

    data: Any
    timestamp: int
    url: Optional[str] = None
    manual: bool = False

    def to_dict(self) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {"data": self.data, "timestamp": self.timestamp}
        if self.manual:
            envelope["manual"] = True
        else:
            envelope["url"] = self.url
        return envelope

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CachedEnvelope":
        return cls(
            data=raw.get("data"),
            timestamp=int(raw["timestamp"]),
            url=raw.get("url"),
            manual=bool(raw.get("manual", False)),
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> "CachedEnvelope":
        return cls.from_dict(json.loads(raw.decode("utf-8")))


def is_stale(envelope: CachedEnvelope, now_ms: int, threshold_ms: int = STALE_THRESHOLD_MS) -> bool:
    """Return True when the envelope is older than the threshold.

    The comparison is strict: an envelope exactly ``threshold_ms`` old is
    still fresh.
    """
    return now_ms - envelope.timestamp > threshold_ms


@dataclass
class SyncOutcome:
    """Result of refreshing one data key during background sync."""

    key: str
    ok: bool
    timestamp: Optional[int] = None
    error: Optional[str] = None


@dataclass
class SyncReport:
    """Per-key outcomes of one background sync run."""

    tag: str
    outcomes: list = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len([o for o in self.outcomes if o.ok])

    @property
    def failed(self) -> int:
        return len([o for o in self.outcomes if not o.ok])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "outcomes": [
                {"key": o.key, "ok": o.ok, "timestamp": o.timestamp, "error": o.error} for o in self.outcomes
            ],
        }
