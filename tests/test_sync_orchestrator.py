"""
Tests for the sync orchestrator: end-to-end pipelines against scripted
provider APIs and a real SQLite store.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from helpers import (
    SYNC_END,
    SYNC_START,
    ScriptedAPI,
    SleepRecorder,
    fitbit_api_with_two_days,
    make_credential,
    token_response,
)
from vitalis.services.connectors import ConnectorRegistry, FitbitConnector, OuraConnector
from vitalis.services.errors import InvalidSyncRequestError, UnauthorizedError, UnknownUserError
from vitalis.services.sync_orchestrator import SyncOrchestrator
from vitalis.services.sync_types import DeviceConnectionStatus, MetricType, ProviderId, utcnow

USER = "user-a"
FITBIT_TOKEN = "/oauth2/token"
STEPS_RANGE = "/1/user/-/activities/steps/date/2024-01-01/2024-01-02.json"


def fitbit(api: ScriptedAPI) -> FitbitConnector:
    return FitbitConnector("client-id", "client-secret", transport=api.transport, sleep=SleepRecorder())


def unavailable(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, json={"error": "maintenance"})


class SlowFitbitConnector(FitbitConnector):
    def __init__(self, delay: float, slow_metrics=None, **kwargs):
        super().__init__("client-id", "client-secret", **kwargs)
        self.delay = delay
        self.slow_metrics = slow_metrics

    async def _fetch_with(self, credential, metric, start, end):
        if self.slow_metrics is None or metric in self.slow_metrics:
            await asyncio.sleep(self.delay)
        return await super()._fetch_with(credential, metric, start, end)


class ExpiredThenHangingFitbitConnector(FitbitConnector):
    """Rejects the first access token, then hangs on every later request."""

    def __init__(self, **kwargs):
        super().__init__("client-id", "client-secret", **kwargs)
        self.calls = 0

    async def _fetch_with(self, credential, metric, start, end):
        self.calls += 1
        if self.calls == 1:
            raise UnauthorizedError("access token expired")
        await asyncio.sleep(5)
        return await super()._fetch_with(credential, metric, start, end)


@pytest.fixture
def orchestrator_for(users, credential_store, gateway):
    def build(*connectors, **kwargs) -> SyncOrchestrator:
        return SyncOrchestrator(ConnectorRegistry(connectors), credential_store, gateway, **kwargs)
    return build


class TestSuccessfulSync:
    @pytest.mark.asyncio
    async def test_two_days_of_heart_rate(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()))

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        result = results[ProviderId.FITBIT]
        assert result.success is True
        assert result.records_processed == 10
        assert result.records_inserted == 10
        assert result.error is None
        assert gateway.count_health_records(USER, ProviderId.FITBIT) == 10

        connection = gateway.get_device_connection(USER, ProviderId.FITBIT)
        assert connection.is_connected is True
        assert connection.last_sync_status == "success"
        assert connection.last_records_processed == 10
        assert connection.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()))

        await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)
        second = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        assert second[ProviderId.FITBIT].records_processed == 10
        assert second[ProviderId.FITBIT].records_inserted == 0
        assert gateway.count_health_records(USER) == 10

    @pytest.mark.asyncio
    async def test_refreshed_credential_is_persisted(self, orchestrator_for, credential_store):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential(expires_in=timedelta(minutes=1)))
        api = fitbit_api_with_two_days().add(FITBIT_TOKEN, json=token_response(access_token="fresh"))
        orchestrator = orchestrator_for(fitbit(api))

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        assert results[ProviderId.FITBIT].success is True
        assert api.count(FITBIT_TOKEN) == 1
        stored = credential_store.get(USER, ProviderId.FITBIT)
        assert stored.access_token == "fresh"
        assert stored.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_defaults_to_connected_providers(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        gateway.upsert_device_connection(USER, ProviderId.FITBIT, DeviceConnectionStatus(is_connected=True))
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()))

        results = await orchestrator.sync_all(USER, start=SYNC_START, end=SYNC_END)

        assert list(results) == [ProviderId.FITBIT]

    @pytest.mark.asyncio
    async def test_no_connected_providers(self, orchestrator_for):
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()))

        assert await orchestrator.sync_all(USER, start=SYNC_START, end=SYNC_END) == {}


class TestFailures:
    @pytest.mark.asyncio
    async def test_revoked_refresh_token_disconnects(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential(expires_in=timedelta(hours=-1)))
        api = fitbit_api_with_two_days().add(FITBIT_TOKEN, status=400, json={"errors": [{"errorType": "invalid_grant"}]})
        orchestrator = orchestrator_for(fitbit(api))

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        result = results[ProviderId.FITBIT]
        assert result.success is False
        assert result.error == "RefreshError"
        assert result.message == "disconnected, please reconnect"
        assert api.paths() == [FITBIT_TOKEN]
        assert credential_store.get(USER, ProviderId.FITBIT) is None

        connection = gateway.get_device_connection(USER, ProviderId.FITBIT)
        assert connection.is_connected is False
        assert connection.last_error == "RefreshError"

    @pytest.mark.asyncio
    async def test_one_provider_down_does_not_affect_another(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        credential_store.upsert(USER, ProviderId.OURA, make_credential(ProviderId.OURA))
        oura = OuraConnector("client-id", "client-secret",
                             transport=ScriptedAPI(fallback=unavailable).transport, sleep=SleepRecorder())
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()), oura)

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT, ProviderId.OURA], SYNC_START, SYNC_END)

        assert results[ProviderId.FITBIT].success is True
        assert results[ProviderId.FITBIT].records_processed == 10
        assert results[ProviderId.OURA].success is False
        assert results[ProviderId.OURA].error == "ProviderUnavailableError"
        assert results[ProviderId.OURA].message == "sync incomplete for Oura Ring, will retry automatically"

        oura_connection = gateway.get_device_connection(USER, ProviderId.OURA)
        assert oura_connection.is_connected is True
        assert oura_connection.last_sync_status == "failed"
        assert credential_store.get(USER, ProviderId.OURA) is not None

    @pytest.mark.asyncio
    async def test_missing_credential(self, orchestrator_for, gateway):
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()))

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        assert results[ProviderId.FITBIT].error == "NotConnectedError"
        # never-connected providers get no connection row
        assert gateway.get_device_connection(USER, ProviderId.FITBIT) is None

    @pytest.mark.asyncio
    async def test_missing_credential_marks_existing_connection(self, orchestrator_for, gateway):
        gateway.upsert_device_connection(USER, ProviderId.FITBIT, DeviceConnectionStatus(is_connected=True))
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()))

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        assert results[ProviderId.FITBIT].error == "NotConnectedError"
        connection = gateway.get_device_connection(USER, ProviderId.FITBIT)
        assert connection.is_connected is False
        assert connection.last_error == "NotConnectedError"

    @pytest.mark.asyncio
    async def test_unregistered_provider_reported(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.XIAOMI, make_credential(ProviderId.XIAOMI))
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()))

        results = await orchestrator.sync_all(USER, [ProviderId.XIAOMI], SYNC_START, SYNC_END)

        assert results[ProviderId.XIAOMI].error == "UnknownProviderError"
        assert gateway.get_device_connection(USER, ProviderId.XIAOMI) is None

    @pytest.mark.asyncio
    async def test_rate_limited_metric_is_partial(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        api = fitbit_api_with_two_days().add(STEPS_RANGE, status=429, headers={"Retry-After": "1"})
        orchestrator = orchestrator_for(fitbit(api))

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        result = results[ProviderId.FITBIT]
        assert result.success is False
        assert result.error == "RateLimitedError"
        assert result.records_processed == 10
        assert api.count(STEPS_RANGE) == 4
        # metrics after the rate-limited one still ran
        assert any("/sleep/" in path for path in api.paths())
        assert gateway.get_device_connection(USER, ProviderId.FITBIT).last_sync_status == "partial"


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_provider_timeout_becomes_failure(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        slow = SlowFitbitConnector(delay=5, transport=fitbit_api_with_two_days().transport)
        orchestrator = orchestrator_for(slow, provider_timeout=0.05, total_timeout=5)

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        assert results[ProviderId.FITBIT].success is False
        assert results[ProviderId.FITBIT].error == "ProviderUnavailableError"
        assert gateway.get_device_connection(USER, ProviderId.FITBIT).last_sync_status == "failed"

    @pytest.mark.asyncio
    async def test_overall_timeout_reports_pending_providers(self, orchestrator_for, credential_store):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        credential_store.upsert(USER, ProviderId.OURA, make_credential(ProviderId.OURA))
        slow = SlowFitbitConnector(delay=5, transport=fitbit_api_with_two_days().transport)
        oura = OuraConnector("client-id", "client-secret",
                             transport=ScriptedAPI(fallback=unavailable).transport, sleep=SleepRecorder())
        orchestrator = orchestrator_for(slow, oura, provider_timeout=10, total_timeout=0.2)

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT, ProviderId.OURA], SYNC_START, SYNC_END)

        assert set(results) == {ProviderId.FITBIT, ProviderId.OURA}
        assert results[ProviderId.FITBIT].error == "ProviderUnavailableError"
        assert results[ProviderId.OURA].error == "ProviderUnavailableError"

    @pytest.mark.asyncio
    async def test_overall_timeout_keeps_progress_counts(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        slow = SlowFitbitConnector(
            delay=5,
            slow_metrics={MetricType.SPO2, MetricType.STEPS},
            transport=fitbit_api_with_two_days().transport,
        )
        orchestrator = orchestrator_for(slow, provider_timeout=10, total_timeout=0.5)

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        result = results[ProviderId.FITBIT]
        assert result.success is False
        assert result.error == "ProviderUnavailableError"
        assert result.records_processed == 10
        assert result.records_inserted == 10
        assert gateway.count_health_records(USER, ProviderId.FITBIT) == 10
        assert gateway.get_device_connection(USER, ProviderId.FITBIT).last_records_processed == 10

    @pytest.mark.asyncio
    async def test_credential_refreshed_after_401_survives_timeout(self, orchestrator_for, credential_store):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        api = ScriptedAPI().add(FITBIT_TOKEN, json=token_response())
        connector = ExpiredThenHangingFitbitConnector(transport=api.transport, sleep=SleepRecorder())
        orchestrator = orchestrator_for(connector, provider_timeout=0.3, total_timeout=5)

        results = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END)

        assert results[ProviderId.FITBIT].error == "ProviderUnavailableError"
        assert api.count(FITBIT_TOKEN) == 1
        stored = credential_store.get(USER, ProviderId.FITBIT)
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-2"


class TestRequestValidation:
    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, orchestrator_for):
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()))

        with pytest.raises(InvalidSyncRequestError):
            await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_END, SYNC_START)

    @pytest.mark.asyncio
    async def test_unknown_user_rejected(self, orchestrator_for):
        orchestrator = orchestrator_for(fitbit(fitbit_api_with_two_days()))

        with pytest.raises(UnknownUserError):
            await orchestrator.sync_all("nobody", [ProviderId.FITBIT], SYNC_START, SYNC_END)

    def test_default_window(self, orchestrator_for):
        orchestrator = orchestrator_for(default_window_days=3)

        start, end = orchestrator.resolve_range()

        assert end - start == timedelta(days=3)


class TestScheduledSkip:
    @pytest.mark.asyncio
    async def test_recent_sync_skipped_unless_forced(self, orchestrator_for, credential_store, gateway):
        credential_store.upsert(USER, ProviderId.FITBIT, make_credential())
        gateway.upsert_device_connection(USER, ProviderId.FITBIT, DeviceConnectionStatus(
            is_connected=True, last_sync_at=utcnow(), last_sync_status="success",
        ))
        api = fitbit_api_with_two_days()
        orchestrator = orchestrator_for(fitbit(api))

        skipped = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END, force=False)
        assert skipped[ProviderId.FITBIT].skipped is True
        assert api.requests == []

        forced = await orchestrator.sync_all(USER, [ProviderId.FITBIT], SYNC_START, SYNC_END, force=True)
        assert forced[ProviderId.FITBIT].records_processed == 10
