"""
Apple Health connector

HealthKit has no server API. Samples are uploaded by the companion iOS app to
a relay service, which exposes OAuth and a cursor-paged ``/samples`` endpoint.
The relay base URL comes from APPLE_HEALTH_RELAY_URL.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from vitalis.services.connectors.base import BaseConnector
from vitalis.services.sync_types import Credential, MetricType, ProviderId, RawPayload

logger = logging.getLogger(__name__)


class AppleHealthConnector(BaseConnector):
    PROVIDER = ProviderId.APPLE
    DISPLAY_NAME = "Apple Health"
    MANUFACTURER = "Apple"
    ENV_PREFIX = "APPLE_HEALTH"
    BASE_URL = "https://healthkit-relay.vitalis.health/v1"
    DEFAULT_SCOPES = ["heart_rate", "oxygen_saturation", "step_count", "sleep_analysis", "active_energy"]
    SUPPORTED_METRICS = (
        MetricType.HEART_RATE,
        MetricType.SPO2,
        MetricType.STEPS,
        MetricType.SLEEP_DURATION,
        MetricType.CALORIES,
    )

    PAGE_LIMIT = 40
    PAGE_SIZE = 500
    MIN_SYNC_INTERVAL = timedelta(minutes=10)

    SAMPLE_TYPES = {
        MetricType.HEART_RATE: "HKQuantityTypeIdentifierHeartRate",
        MetricType.SPO2: "HKQuantityTypeIdentifierOxygenSaturation",
        MetricType.STEPS: "HKQuantityTypeIdentifierStepCount",
        MetricType.SLEEP_DURATION: "HKCategoryTypeIdentifierSleepAnalysis",
        MetricType.CALORIES: "HKQuantityTypeIdentifierActiveEnergyBurned",
    }

    @property
    def auth_url(self) -> str:
        return f"{self.base_url}/oauth/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth/token"

    async def _fetch_pages(
        self,
        client: httpx.AsyncClient,
        credential: Credential,
        metric: MetricType,
        start: datetime,
        end: datetime,
        payload: RawPayload,
    ) -> None:
        cursor: Optional[str] = None

        while True:
            if len(payload.pages) >= self.PAGE_LIMIT:
                payload.truncated = True
                return

            params = {
                "type": self.SAMPLE_TYPES[metric],
                "start": start.isoformat(),
                "end": end.isoformat(),
                "limit": self.PAGE_SIZE,
            }
            if cursor:
                params["cursor"] = cursor

            page = await self._request_json(client, "GET", "/samples", params=params)
            payload.pages.append(page)

            cursor = page.get("next_cursor") if isinstance(page, dict) else None
            if not cursor:
                return

    async def _resolve_account_id(self, credential: Credential, token: Dict[str, Any]) -> Optional[str]:
        account_id = await super()._resolve_account_id(credential, token)
        if account_id:
            return account_id
        return await self._fetch_profile_field(credential, "/me", "id")
