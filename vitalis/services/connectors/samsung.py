"""
Samsung Health connector

Data is requested per data type with millisecond epoch bounds; the response
carries ``result`` rows and a ``next_offset`` while more rows remain.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from vitalis.services.connectors.base import BaseConnector
from vitalis.services.sync_types import Credential, MetricType, ProviderId, RawPayload

logger = logging.getLogger(__name__)


class SamsungHealthConnector(BaseConnector):
    PROVIDER = ProviderId.SAMSUNG
    DISPLAY_NAME = "Samsung Health"
    MANUFACTURER = "Samsung"
    ENV_PREFIX = "SAMSUNG"
    BASE_URL = "https://shealth.samsung.com/api/v1"
    AUTH_URL = "https://account.samsung.com/mobile/oauth2/authorize"
    TOKEN_URL = "https://account.samsung.com/mobile/oauth2/token"
    DEFAULT_SCOPES = ["heart_rate", "oxygen_saturation", "step_count", "sleep", "calories_burned"]
    SUPPORTED_METRICS = (
        MetricType.HEART_RATE,
        MetricType.SPO2,
        MetricType.STEPS,
        MetricType.SLEEP_DURATION,
        MetricType.CALORIES,
    )

    PAGE_LIMIT = 50
    PAGE_SIZE = 1000
    MIN_SYNC_INTERVAL = timedelta(minutes=5)

    DATA_TYPES = {
        MetricType.HEART_RATE: "heart_rates",
        MetricType.SPO2: "oxygen_saturation",
        MetricType.STEPS: "step_daily_trends",
        MetricType.SLEEP_DURATION: "sleep",
        MetricType.CALORIES: "calories_burned",
    }

    async def _fetch_pages(
        self,
        client: httpx.AsyncClient,
        credential: Credential,
        metric: MetricType,
        start: datetime,
        end: datetime,
        payload: RawPayload,
    ) -> None:
        account = credential.external_account_id or "me"
        path = f"/users/{account}/{self.DATA_TYPES[metric]}"
        offset: Optional[int] = 0

        while offset is not None:
            if len(payload.pages) >= self.PAGE_LIMIT:
                payload.truncated = True
                return

            page = await self._request_json(
                client,
                "POST",
                path,
                json={
                    "start_time": int(start.timestamp() * 1000),
                    "end_time": int(end.timestamp() * 1000),
                    "time_offset": "+00:00",
                    "offset": offset,
                    "limit": self.PAGE_SIZE,
                },
            )
            payload.pages.append(page)
            offset = page.get("next_offset") if isinstance(page, dict) else None

    async def _resolve_account_id(self, credential: Credential, token: Dict[str, Any]) -> Optional[str]:
        account_id = await super()._resolve_account_id(credential, token)
        if account_id:
            return account_id
        return await self._fetch_profile_field(credential, "/users/me/profile", "user_id")
