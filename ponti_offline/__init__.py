"""Ponti Offline - offline-first caching gateway for the Ponti student portal.

Serves the portal's static assets cache-first, its data API network-first with
a cached fallback, and its pages network-first with an offline page, so the
portal keeps working when the campus network does not.
"""

from ponti_offline.client.offline import (
    OfflineClient,
    OfflineData,
    WorkerError,
    WorkerRPCError,
    WorkerTimeoutError,
    WorkerUnavailableError,
)
from ponti_offline.core.worker import OfflineWorker

__version__ = "0.1.0"

__all__ = [
    "OfflineWorker",
    "OfflineClient",
    "OfflineData",
    "WorkerError",
    "WorkerRPCError",
    "WorkerTimeoutError",
    "WorkerUnavailableError",
]
