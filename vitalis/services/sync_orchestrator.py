"""
Health Sync Orchestrator

Runs one pipeline per provider for a user:

    credential -> refresh if needed -> fetch per metric -> normalize -> persist

Pipelines run as concurrent asyncio tasks and never share mutable state.
Blocking database calls run in worker threads. Every provider-level failure,
including timeouts, becomes a SyncResult; only caller-input errors escape
``sync_all``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from vitalis.core.logging import log_audit
from vitalis.services.connectors.base import BaseConnector
from vitalis.services.connectors.registry import ConnectorRegistry
from vitalis.services.credential_store import CredentialStore
from vitalis.services.errors import (
    HealthSyncError,
    InvalidSyncRequestError,
    NotConnectedError,
    PersistenceError,
    ProviderUnavailableError,
    RateLimitedError,
    RefreshError,
    UnknownProviderError,
    UnknownUserError,
    user_visible_message,
)
from vitalis.services.normalization import normalize
from vitalis.services.persistence import HealthDataGateway
from vitalis.services.sync_types import (
    Credential,
    DeviceConnectionStatus,
    MetricType,
    ProviderId,
    SyncResult,
    ensure_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class _ProviderRun:
    """Counters for one provider pipeline, kept so failures still report progress."""
    processed: int = 0
    inserted: int = 0
    dropped: int = 0
    rate_limited: List[MetricType] = field(default_factory=list)


class SyncOrchestrator:
    def __init__(
        self,
        registry: ConnectorRegistry,
        credential_store: CredentialStore,
        gateway: HealthDataGateway,
        provider_timeout: float = 60.0,
        total_timeout: float = 180.0,
        default_window_days: int = 7,
        normalizer: Callable = normalize,
    ):
        self.registry = registry
        self.credential_store = credential_store
        self.gateway = gateway
        self.provider_timeout = provider_timeout
        self.total_timeout = total_timeout
        self.default_window = timedelta(days=default_window_days)
        self._normalize = normalizer

    def resolve_range(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Tuple[datetime, datetime]:
        end = ensure_utc(end) or utcnow()
        start = ensure_utc(start) or end - self.default_window
        if start >= end:
            raise InvalidSyncRequestError("start must be before end")
        return start, end

    async def sync_all(
        self,
        user_id: str,
        providers: Optional[Iterable[ProviderId]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        metrics: Optional[Iterable[MetricType]] = None,
        force: bool = True,
    ) -> Dict[ProviderId, SyncResult]:
        """
        Sync ``providers`` (default: every connected provider) for ``user_id``.

        Returns a result for every requested provider. Raises
        InvalidSyncRequestError for an empty or inverted range and
        UnknownUserError for an unknown user.
        """
        start, end = self.resolve_range(start, end)

        if not await asyncio.to_thread(self.gateway.user_exists, user_id):
            raise UnknownUserError(f"Unknown user {user_id}")

        if providers is None:
            targets = await asyncio.to_thread(self.gateway.list_connected_providers, user_id)
        else:
            targets = list(dict.fromkeys(providers))

        if not targets:
            logger.info(f"No connected providers to sync for user {user_id}")
            return {}

        metric_filter = list(metrics) if metrics else None

        logger.info(
            f"Syncing {len(targets)} provider(s) for user {user_id} "
            f"from {start.isoformat()} to {end.isoformat()}"
        )

        runs = {provider: _ProviderRun() for provider in targets}
        tasks = {
            provider: asyncio.create_task(
                self._run_provider(user_id, provider, start, end, metric_filter, force, runs[provider]),
                name=f"sync-{provider.value}",
            )
            for provider in targets
        }

        done, pending = await asyncio.wait(tasks.values(), timeout=self.total_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[ProviderId, SyncResult] = {}
        for provider, task in tasks.items():
            if task in pending or task.cancelled():
                error = ProviderUnavailableError(f"sync exceeded {self.total_timeout}s overall limit")
                results[provider] = await self._fail(user_id, provider, error, runs[provider])
            else:
                results[provider] = task.result()

        succeeded = sum(1 for r in results.values() if r.success)
        logger.info(
            f"Sync finished for user {user_id}: {succeeded}/{len(results)} providers succeeded, "
            f"{sum(r.records_processed for r in results.values())} records processed"
        )
        return results

    async def _run_provider(
        self,
        user_id: str,
        provider: ProviderId,
        start: datetime,
        end: datetime,
        metrics: Optional[List[MetricType]],
        force: bool,
        run: _ProviderRun,
    ) -> SyncResult:
        try:
            return await asyncio.wait_for(
                self._sync_provider(user_id, provider, start, end, metrics, force, run),
                timeout=self.provider_timeout,
            )
        except asyncio.TimeoutError:
            error = ProviderUnavailableError(f"{provider.value} sync timed out after {self.provider_timeout}s")
            return await self._fail(user_id, provider, error, run)
        except HealthSyncError as e:
            return await self._fail(user_id, provider, e, run)
        except Exception as e:
            logger.exception(f"Unexpected error syncing {provider.value} for user {user_id}")
            return await self._fail(user_id, provider, e, run)

    async def _sync_provider(
        self,
        user_id: str,
        provider: ProviderId,
        start: datetime,
        end: datetime,
        metrics: Optional[List[MetricType]],
        force: bool,
        run: _ProviderRun,
    ) -> SyncResult:
        connector = self.registry.get(provider)

        if not force:
            connection = await asyncio.to_thread(self.gateway.get_device_connection, user_id, provider)
            if self._recently_synced(connection, connector):
                logger.info(f"Skipping {provider.value} for user {user_id}: synced recently")
                return SyncResult(success=True, skipped=True, message="synced recently")

        credential = await asyncio.to_thread(self.credential_store.get, user_id, provider)
        if credential is None:
            raise NotConnectedError(f"No active {provider.value} credential")

        if connector.needs_refresh(credential):
            credential = await connector.refresh_credentials(credential)
            await self._save_credential(user_id, provider, credential)

        # Persisted before the refreshed token is used, so a timeout or
        # cancellation later in the pipeline cannot lose a rotated refresh token
        async def save_refreshed(refreshed: Credential):
            await self._save_credential(user_id, provider, refreshed)

        wanted = [m for m in (metrics or connector.supported_metrics) if m in connector.supported_metrics]
        for metric in wanted:
            try:
                fetched = await connector.fetch_range(credential, metric, start, end, on_refresh=save_refreshed)
            except RateLimitedError as e:
                if e.credential is not None:
                    credential = e.credential
                logger.warning(f"{provider.value}/{metric.value} rate limited for user {user_id}, continuing")
                run.rate_limited.append(metric)
                continue

            if fetched.refreshed:
                credential = fetched.credential

            normalized = self._normalize(provider, fetched.payload, metric, user_id)
            inserted = await asyncio.to_thread(self.gateway.upsert_health_records, normalized.records)

            run.processed += len(normalized.records)
            run.inserted += inserted
            run.dropped += normalized.dropped

        if run.rate_limited:
            error = RateLimitedError(
                f"rate limited on {', '.join(m.value for m in run.rate_limited)}"
            )
            result = self._result(run, success=False, error=error.code,
                                  message=user_visible_message(error, connector.DISPLAY_NAME))
            await self._record_status(user_id, provider, DeviceConnectionStatus(
                is_connected=True,
                last_sync_status="partial",
                last_error=error.code,
                last_records_processed=run.processed,
            ))
            return result

        await self._record_status(user_id, provider, DeviceConnectionStatus(
            is_connected=True,
            last_sync_at=utcnow(),
            last_sync_status="success",
            last_records_processed=run.processed,
        ))
        logger.info(
            f"{provider.value} synced for user {user_id}: {run.processed} processed, "
            f"{run.inserted} new, {run.dropped} dropped"
        )
        return self._result(run, success=True)

    async def _fail(self, user_id: str, provider: ProviderId, error: Exception, run: _ProviderRun) -> SyncResult:
        code = error.code if isinstance(error, HealthSyncError) else type(error).__name__
        display_name = self._display_name(provider)
        if isinstance(error, HealthSyncError):
            message = user_visible_message(error, display_name)
        else:
            message = f"sync incomplete for {display_name}, will retry automatically"

        logger.warning(f"{provider.value} sync failed for user {user_id}: {code}: {error}")

        if isinstance(error, HealthSyncError) and error.credential is not None and not isinstance(error, RefreshError):
            await self._save_credential(user_id, provider, error.credential, quiet=True)

        disconnected = isinstance(error, (RefreshError, NotConnectedError))
        if isinstance(error, RefreshError):
            try:
                await asyncio.to_thread(self.credential_store.mark_disconnected, user_id, provider)
            except PersistenceError as e:
                logger.error(f"Could not mark {provider.value} credential disconnected: {e}")
            log_audit("provider_disconnected", user_id, {"provider": provider.value, "reason": code})

        if isinstance(error, (NotConnectedError, UnknownProviderError)) and not await self._has_connection(user_id, provider):
            return self._result(run, success=False, error=code, message=message)

        await self._record_status(user_id, provider, DeviceConnectionStatus(
            is_connected=not disconnected,
            last_sync_status="failed",
            last_error=code,
            last_records_processed=run.processed,
        ))
        return self._result(run, success=False, error=code, message=message)

    async def _save_credential(self, user_id: str, provider: ProviderId, credential: Credential, quiet: bool = False):
        try:
            await asyncio.to_thread(self.credential_store.upsert, user_id, provider, credential)
        except PersistenceError:
            if not quiet:
                raise
            logger.error(f"Could not persist refreshed {provider.value} credential for user {user_id}")

    async def _has_connection(self, user_id: str, provider: ProviderId) -> bool:
        try:
            connection = await asyncio.to_thread(self.gateway.get_device_connection, user_id, provider)
        except PersistenceError as e:
            logger.error(f"Could not read {provider.value} connection for user {user_id}: {e}")
            return False
        return connection is not None

    async def _record_status(self, user_id: str, provider: ProviderId, status: DeviceConnectionStatus):
        try:
            await asyncio.to_thread(self.gateway.upsert_device_connection, user_id, provider, status)
        except PersistenceError as e:
            logger.error(f"Could not record {provider.value} sync status for user {user_id}: {e}")

    @staticmethod
    def _result(run: _ProviderRun, success: bool, error: Optional[str] = None, message: Optional[str] = None) -> SyncResult:
        return SyncResult(
            success=success,
            records_processed=run.processed,
            error=error,
            message=message,
            records_inserted=run.inserted,
            records_dropped=run.dropped,
        )

    @staticmethod
    def _recently_synced(connection, connector: BaseConnector) -> bool:
        if connection is None or not connection.is_connected or connection.last_sync_at is None:
            return False
        return utcnow() - ensure_utc(connection.last_sync_at) < connector.MIN_SYNC_INTERVAL

    def _display_name(self, provider: ProviderId) -> str:
        if provider in self.registry:
            return self.registry.get(provider).DISPLAY_NAME
        return provider.value
