"""
Fire-Boltt connector

Talks to the partner API configured by FIRE_BOLTT_API_URL. Records page with
an opaque ``cursor``; sleep is reported in hours.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import httpx

from vitalis.services.connectors.base import BaseConnector
from vitalis.services.sync_types import Credential, MetricType, ProviderId, RawPayload

logger = logging.getLogger(__name__)


class FireBolttConnector(BaseConnector):
    PROVIDER = ProviderId.FIRE_BOLTT
    DISPLAY_NAME = "Fire-Boltt"
    MANUFACTURER = "Fire-Boltt"
    ENV_PREFIX = "FIRE_BOLTT"
    BASE_URL = "https://api.fireboltt.com/v1"
    DEFAULT_SCOPES = ["health:read"]
    SUPPORTED_METRICS = (
        MetricType.HEART_RATE,
        MetricType.SPO2,
        MetricType.STEPS,
        MetricType.SLEEP_DURATION,
        MetricType.CALORIES,
    )

    PAGE_LIMIT = 30
    MIN_SYNC_INTERVAL = timedelta(minutes=15)

    RECORD_PATHS = {
        MetricType.HEART_RATE: "/health/heart_rate",
        MetricType.SPO2: "/health/spo2",
        MetricType.STEPS: "/health/steps",
        MetricType.SLEEP_DURATION: "/health/sleep",
        MetricType.CALORIES: "/health/calories",
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

            params = {"from": start.isoformat(), "to": end.isoformat()}
            if cursor:
                params["cursor"] = cursor

            page = await self._request_json(client, "GET", self.RECORD_PATHS[metric], params=params)
            payload.pages.append(page)

            cursor = page.get("cursor") if isinstance(page, dict) else None
            if not cursor:
                return
