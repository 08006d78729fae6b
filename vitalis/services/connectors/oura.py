"""
Oura Ring API v2 connector

Collections page with ``next_token``. Heart rate takes datetime bounds; the
daily collections take date bounds.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from vitalis.services.connectors.base import BaseConnector
from vitalis.services.sync_types import Credential, MetricType, ProviderId, RawPayload

logger = logging.getLogger(__name__)


class OuraConnector(BaseConnector):
    PROVIDER = ProviderId.OURA
    DISPLAY_NAME = "Oura Ring"
    MANUFACTURER = "Oura"
    ENV_PREFIX = "OURA"
    BASE_URL = "https://api.ouraring.com/v2/usercollection"
    AUTH_URL = "https://cloud.ouraring.com/oauth/authorize"
    TOKEN_URL = "https://api.ouraring.com/oauth/token"
    DEFAULT_SCOPES = ["personal", "daily", "heartrate", "spo2"]
    SUPPORTED_METRICS = (
        MetricType.HEART_RATE,
        MetricType.SPO2,
        MetricType.STEPS,
        MetricType.SLEEP_DURATION,
        MetricType.CALORIES,
    )

    PAGE_LIMIT = 50
    MIN_SYNC_INTERVAL = timedelta(minutes=5)

    COLLECTIONS = {
        MetricType.HEART_RATE: "/heartrate",
        MetricType.SPO2: "/daily_spo2",
        MetricType.STEPS: "/daily_activity",
        MetricType.SLEEP_DURATION: "/sleep",
        MetricType.CALORIES: "/daily_activity",
    }

    def _range_params(self, metric: MetricType, start: datetime, end: datetime) -> Dict[str, str]:
        if metric == MetricType.HEART_RATE:
            return {"start_datetime": start.isoformat(), "end_datetime": end.isoformat()}
        return {"start_date": start.date().isoformat(), "end_date": end.date().isoformat()}

    async def _fetch_pages(
        self,
        client: httpx.AsyncClient,
        credential: Credential,
        metric: MetricType,
        start: datetime,
        end: datetime,
        payload: RawPayload,
    ) -> None:
        params = self._range_params(metric, start, end)
        next_token: Optional[str] = None

        while True:
            if len(payload.pages) >= self.PAGE_LIMIT:
                payload.truncated = True
                return

            request_params = dict(params)
            if next_token:
                request_params["next_token"] = next_token

            page = await self._request_json(client, "GET", self.COLLECTIONS[metric], params=request_params)
            payload.pages.append(page)

            next_token = page.get("next_token") if isinstance(page, dict) else None
            if not next_token:
                return

    async def _resolve_account_id(self, credential: Credential, token: Dict[str, Any]) -> Optional[str]:
        return await self._fetch_profile_field(credential, "/personal_info", "id")
