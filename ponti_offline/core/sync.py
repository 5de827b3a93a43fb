"""Background sync: refresh every cached data entry once connectivity is back."""

import sqlite3
from typing import Optional

from ponti_offline.core.fetcher import NetworkError
from ponti_offline.core.strategies import StrategyExecutor
from ponti_offline.storage.models import SyncOutcome, SyncReport
from ponti_offline.utils.logger import get_logger


class BackgroundSync:
    """Re-fetches the data store's keys one at a time.

    Keys are processed serially; a key that fails is recorded in the report
    and keeps its previous envelope, and the remaining keys still run.
    """

    def __init__(self, executor: StrategyExecutor, tag: str = "background-sync", enabled: bool = True) -> None:
        self.executor = executor
        self.tag = tag
        self.enabled = enabled
        self.logger = get_logger("core.sync")

    def handle_sync(self, tag: Optional[str] = None) -> SyncReport:
        """Handle a sync event. Tags other than the registered one are ignored."""
        tag = tag or self.tag
        report = SyncReport(tag=tag)
        if not self.enabled:
            self.logger.info("Background sync is disabled")
            return report
        if tag != self.tag:
            self.logger.info(f"Ignoring sync event with unknown tag: {tag}")
            return report

        self.logger.info("Background sync triggered")
        try:
            entries = self.executor.storage.open(self.executor.data_name).urls()
        except sqlite3.Error as e:
            self.logger.error(f"Could not list data cache for sync: {e}")
            return report

        for key, url in entries:
            report.outcomes.append(self._refresh(key, url or key))

        self.logger.info(f"Background sync finished: {report.succeeded} refreshed, {report.failed} failed")
        return report

    def _refresh(self, key: str, url: str) -> SyncOutcome:
        upstream = self.executor.upstream_url(url)
        try:
            response = self.executor.fetcher.fetch_with_timeout("GET", upstream, self.executor.data_timeout_ms)
            if response.status_code != 200:
                raise NetworkError(f"Upstream returned {response.status_code}")
            envelope = self.executor.store_envelope(key, response.json(), url=url, manual=True)
        except (NetworkError, ValueError, TypeError, sqlite3.Error) as e:
            self.logger.warning(f"Sync failed for {key}: {e}")
            return SyncOutcome(key=key, ok=False, error=str(e))

        self.logger.debug(f"Synced {key}")
        return SyncOutcome(key=key, ok=True, timestamp=envelope.timestamp)
