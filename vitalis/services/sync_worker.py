"""
Background Sync Worker

Periodically syncs every user with at least one connected provider over the
default window. Uses force=False, so providers synced within their minimum
interval are skipped.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from vitalis.services.errors import HealthSyncError
from vitalis.services.sync_orchestrator import SyncOrchestrator
from vitalis.services.sync_types import utcnow

logger = logging.getLogger(__name__)


class SyncWorker:
    """
    Background worker for scheduled provider syncs.

    Features:
    - Bounded concurrency across users
    - Failure in one user's sync never stops the loop
    """

    MAX_CONCURRENT_USERS = 5
    ERROR_BACKOFF_SECONDS = 60

    def __init__(self, orchestrator: SyncOrchestrator, interval_minutes: int = 60):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_minutes * 60
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._semaphore = asyncio.Semaphore(self.MAX_CONCURRENT_USERS)
        self.last_run_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the worker loop as a background task (non-blocking)"""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_worker_loop())
        logger.info(f"Sync worker started (every {self.interval_seconds // 60} min)")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync worker stopped")

    async def _run_worker_loop(self):
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Sync worker error: {e}")
                await asyncio.sleep(self.ERROR_BACKOFF_SECONDS)

    async def run_once(self) -> Dict[str, int]:
        """Sync every connected user once; returns records processed per user."""
        user_ids = await asyncio.to_thread(self.orchestrator.gateway.list_users_with_connections)
        self.last_run_at = utcnow()
        if not user_ids:
            return {}

        logger.info(f"Scheduled sync for {len(user_ids)} user(s)")
        outcomes = await asyncio.gather(
            *(self._sync_user(user_id) for user_id in user_ids), return_exceptions=True
        )

        totals: Dict[str, int] = {}
        for user_id, outcome in zip(user_ids, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Scheduled sync failed for user {user_id}: {type(outcome).__name__}: {outcome}")
                totals[user_id] = 0
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                totals[user_id] = outcome
        return totals

    async def _sync_user(self, user_id: str) -> int:
        async with self._semaphore:
            try:
                results = await self.orchestrator.sync_all(user_id, force=False)
            except HealthSyncError as e:
                logger.warning(f"Scheduled sync rejected for user {user_id}: {e.code}")
                return 0
            return sum(result.records_processed for result in results.values())


# Global worker instance (singleton)
_sync_worker: Optional[SyncWorker] = None


def get_sync_worker() -> Optional[SyncWorker]:
    """Get the global sync worker instance"""
    return _sync_worker


async def start_sync_worker(orchestrator: SyncOrchestrator, interval_minutes: int) -> SyncWorker:
    """Start the scheduled sync worker"""
    global _sync_worker

    if _sync_worker is None:
        _sync_worker = SyncWorker(orchestrator, interval_minutes)
    await _sync_worker.start()
    return _sync_worker


async def stop_sync_worker():
    """Stop the scheduled sync worker"""
    global _sync_worker

    if _sync_worker:
        await _sync_worker.stop()
        _sync_worker = None
