"""
Xiaomi (Mi Fitness) connector

Data endpoints take unix-second bounds and page with a 1-based ``page``
parameter until ``has_more`` is false.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from vitalis.services.connectors.base import BaseConnector
from vitalis.services.sync_types import Credential, MetricType, ProviderId, RawPayload

logger = logging.getLogger(__name__)


class XiaomiConnector(BaseConnector):
    PROVIDER = ProviderId.XIAOMI
    DISPLAY_NAME = "Xiaomi Mi Fitness"
    MANUFACTURER = "Xiaomi"
    ENV_PREFIX = "XIAOMI"
    BASE_URL = "https://api.mi.com/health/v1"
    AUTH_URL = "https://account.xiaomi.com/oauth2/authorize"
    TOKEN_URL = "https://account.xiaomi.com/oauth2/token"
    DEFAULT_SCOPES = ["health.read", "profile"]
    SUPPORTED_METRICS = (
        MetricType.HEART_RATE,
        MetricType.SPO2,
        MetricType.STEPS,
        MetricType.SLEEP_DURATION,
        MetricType.CALORIES,
    )

    PAGE_LIMIT = 30
    PAGE_SIZE = 200
    MIN_SYNC_INTERVAL = timedelta(minutes=15)

    DATA_PATHS = {
        MetricType.HEART_RATE: "/data/heartrate",
        MetricType.SPO2: "/data/spo2",
        MetricType.STEPS: "/data/steps",
        MetricType.SLEEP_DURATION: "/data/sleep",
        MetricType.CALORIES: "/data/calories",
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
        page_number = 1

        while True:
            if len(payload.pages) >= self.PAGE_LIMIT:
                payload.truncated = True
                return

            page = await self._request_json(
                client,
                "GET",
                self.DATA_PATHS[metric],
                params={
                    "start_time": int(start.timestamp()),
                    "end_time": int(end.timestamp()),
                    "page": page_number,
                    "page_size": self.PAGE_SIZE,
                },
            )
            payload.pages.append(page)

            data = page.get("data") if isinstance(page, dict) else None
            if not isinstance(data, dict) or not data.get("has_more"):
                return
            page_number += 1

    async def _resolve_account_id(self, credential: Credential, token: Dict[str, Any]) -> Optional[str]:
        account_id = await super()._resolve_account_id(credential, token)
        if account_id:
            return account_id
        return await self._fetch_profile_field(credential, "/user/profile", "data", "user_id")
