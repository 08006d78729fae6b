"""
Fitbit Web API connector

Intraday heart rate is served one day per request; the other metrics accept
date ranges of up to 30 days. Token requests use HTTP Basic client auth.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from vitalis.services.connectors.base import BaseConnector
from vitalis.services.sync_types import Credential, MetricType, ProviderId, RawPayload

logger = logging.getLogger(__name__)


class FitbitConnector(BaseConnector):
    PROVIDER = ProviderId.FITBIT
    DISPLAY_NAME = "Fitbit"
    MANUFACTURER = "Fitbit"
    ENV_PREFIX = "FITBIT"
    BASE_URL = "https://api.fitbit.com"
    AUTH_URL = "https://www.fitbit.com/oauth2/authorize"
    TOKEN_URL = "https://api.fitbit.com/oauth2/token"
    DEFAULT_SCOPES = ["activity", "heartrate", "sleep", "oxygen_saturation", "profile"]
    SUPPORTED_METRICS = (
        MetricType.HEART_RATE,
        MetricType.SPO2,
        MetricType.STEPS,
        MetricType.SLEEP_DURATION,
        MetricType.CALORIES,
    )

    USE_BASIC_AUTH = True
    PAGE_LIMIT = 31
    # 150 requests/hour per user
    MIN_SYNC_INTERVAL = timedelta(minutes=30)
    RANGE_WINDOW_DAYS = 30

    HEART_RATE_DAY_PATH = "/1/user/-/activities/heart/date/{day}/1d/15min.json"
    RANGE_PATHS = {
        MetricType.STEPS: "/1/user/-/activities/steps/date/{start}/{end}.json",
        MetricType.CALORIES: "/1/user/-/activities/calories/date/{start}/{end}.json",
        MetricType.SLEEP_DURATION: "/1.2/user/-/sleep/date/{start}/{end}.json",
        MetricType.SPO2: "/1/user/-/spo2/date/{start}/{end}.json",
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
        window_days = 1 if metric == MetricType.HEART_RATE else self.RANGE_WINDOW_DAYS

        for window_start, window_end in self.date_windows(start, end, window_days):
            if len(payload.pages) >= self.PAGE_LIMIT:
                payload.truncated = True
                return

            if metric == MetricType.HEART_RATE:
                path = self.HEART_RATE_DAY_PATH.format(day=window_start.isoformat())
            else:
                path = self.RANGE_PATHS[metric].format(
                    start=window_start.isoformat(), end=window_end.isoformat()
                )
            payload.pages.append(await self._request_json(client, "GET", path))

    async def _resolve_account_id(self, credential: Credential, token: Dict[str, Any]) -> Optional[str]:
        if token.get("user_id"):
            return token["user_id"]
        return await self._fetch_profile_field(credential, "/1/user/-/profile.json", "user", "encodedId")
