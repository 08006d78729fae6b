"""
Health Sync API

- POST /api/v1/health/sync         sync connected providers, per-provider results plus summary
- GET  /api/v1/health/sync/status  connection list with user-visible status

Provider failures never fail the request: the response is 200 with a mixed
summary.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends

from vitalis.dependencies import get_current_user_id, get_gateway, get_orchestrator, get_registry
from vitalis.schemas.sync_schemas import (
    ConnectionStatusItem,
    ProviderSyncResult,
    SyncRequest,
    SyncResponse,
    SyncStatusResponse,
    SyncSummary,
)
from vitalis.services.connectors.registry import ConnectorRegistry
from vitalis.services.errors import message_for_code
from vitalis.services.persistence import HealthDataGateway
from vitalis.services.sync_orchestrator import SyncOrchestrator
from vitalis.services.sync_types import ProviderId

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/health", tags=["Health Sync"])


@router.post("/sync", response_model=SyncResponse)
async def sync_health_data(
    sync_request: Optional[SyncRequest] = None,
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    sync_request = sync_request or SyncRequest()
    start, end = orchestrator.resolve_range(sync_request.start_date, sync_request.end_date)

    results = await orchestrator.sync_all(
        user_id,
        providers=sync_request.providers,
        start=start,
        end=end,
        metrics=sync_request.metrics,
        force=sync_request.force_sync,
    )

    summary = SyncSummary.from_results(results)
    logger.info(
        f"Sync request for user {user_id}: {summary.successful_syncs}/{summary.total_syncs} succeeded, "
        f"{summary.total_records} records"
    )

    return SyncResponse(
        success=not summary.failed_sources,
        start_date=start,
        end_date=end,
        results={provider.value: ProviderSyncResult.from_result(r) for provider, r in results.items()},
        summary=summary,
    )


@router.get("/sync/status", response_model=SyncStatusResponse)
async def sync_status(
    user_id: str = Depends(get_current_user_id),
    gateway: HealthDataGateway = Depends(get_gateway),
    registry: ConnectorRegistry = Depends(get_registry),
):
    connections = await asyncio.to_thread(gateway.get_device_connections, user_id)

    items = []
    for connection in connections:
        try:
            provider = ProviderId(connection.provider)
            display_name = registry.get(provider).DISPLAY_NAME if provider in registry else provider.value
        except ValueError:
            display_name = connection.provider

        if not connection.is_connected:
            status_message = "disconnected, please reconnect"
        elif connection.last_sync_status in ("failed", "partial"):
            status_message = message_for_code(connection.last_error, display_name)
        elif connection.last_sync_at is None:
            status_message = "connected, waiting for first sync"
        else:
            status_message = "up to date"

        items.append(ConnectionStatusItem(
            provider=connection.provider,
            display_name=display_name,
            is_connected=connection.is_connected,
            last_sync_at=connection.last_sync_at,
            last_sync_status=connection.last_sync_status,
            last_records_processed=connection.last_records_processed or 0,
            status_message=status_message,
        ))

    return SyncStatusResponse(connections=items)
