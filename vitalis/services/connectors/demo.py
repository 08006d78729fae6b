"""
Demo connector

Generates deterministic synthetic readings without any network calls. It is
registered only when DEMO_MODE is enabled, under its own provider id, so
demo data is never attributed to a real provider.
"""

import hashlib
import logging
import random
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import httpx

from vitalis.services.connectors.base import BaseConnector
from vitalis.services.sync_types import Credential, MetricType, ProviderId, RawPayload, utcnow

logger = logging.getLogger(__name__)


class DemoConnector(BaseConnector):
    PROVIDER = ProviderId.DEMO
    DISPLAY_NAME = "Demo Device"
    MANUFACTURER = "Vitalis"
    ENV_PREFIX = "DEMO"
    BASE_URL = "https://demo.invalid"
    AUTH_URL = "https://demo.invalid/oauth/authorize"
    DEFAULT_SCOPES = ["demo"]
    SUPPORTED_METRICS = (
        MetricType.HEART_RATE,
        MetricType.SPO2,
        MetricType.STEPS,
        MetricType.SLEEP_DURATION,
        MetricType.CALORIES,
    )

    MIN_SYNC_INTERVAL = timedelta(minutes=1)
    HEART_RATE_INTERVAL_HOURS = 4
    TOKEN_LIFETIME = timedelta(hours=1)

    @property
    def is_configured(self) -> bool:
        return True

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        # No provider consent screen: send the browser straight to the callback
        return f"{redirect_uri}?code=demo-{secrets.token_hex(8)}&state={state}"

    async def authenticate(self, authorization_code: str, redirect_uri: str) -> Credential:
        return Credential(
            provider=self.PROVIDER,
            access_token=f"demo-access-{secrets.token_hex(16)}",
            refresh_token=f"demo-refresh-{secrets.token_hex(16)}",
            expires_at=utcnow() + self.TOKEN_LIFETIME,
            scopes=list(self.DEFAULT_SCOPES),
            external_account_id=f"demo-{hashlib.sha256(authorization_code.encode()).hexdigest()[:12]}",
        )

    async def refresh_credentials(self, credential: Credential) -> Credential:
        return credential.with_tokens(
            access_token=f"demo-access-{secrets.token_hex(16)}",
            refresh_token=None,
            expires_at=utcnow() + self.TOKEN_LIFETIME,
        )

    async def _fetch_with(self, credential: Credential, metric: MetricType, start: datetime, end: datetime) -> RawPayload:
        payload = RawPayload(provider=self.PROVIDER, metric=metric)
        await self._fetch_pages(None, credential, metric, start, end, payload)
        return payload

    async def _fetch_pages(
        self,
        client: httpx.AsyncClient,
        credential: Credential,
        metric: MetricType,
        start: datetime,
        end: datetime,
        payload: RawPayload,
    ) -> None:
        readings: List[Dict[str, Any]] = []
        for day, _ in self.date_windows(start, end, 1):
            seed = f"{credential.external_account_id}:{metric.value}:{day.isoformat()}"
            rng = random.Random(seed)
            midnight = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)

            if metric == MetricType.HEART_RATE:
                for hour in range(0, 24, self.HEART_RATE_INTERVAL_HOURS):
                    timestamp = midnight + timedelta(hours=hour)
                    if start <= timestamp <= end:
                        readings.append({"timestamp": timestamp.isoformat(), "value": rng.randint(58, 96)})
                continue

            value = {
                MetricType.SPO2: lambda: round(rng.uniform(95.0, 99.5), 1),
                MetricType.STEPS: lambda: rng.randint(3000, 14000),
                MetricType.SLEEP_DURATION: lambda: rng.randint(330, 510),
                MetricType.CALORIES: lambda: rng.randint(1700, 2900),
            }[metric]()
            readings.append({"timestamp": midnight.isoformat(), "value": value})

        payload.pages.append({"readings": readings})
