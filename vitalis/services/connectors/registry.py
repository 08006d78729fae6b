"""
Connector registry

Explicit ProviderId -> connector mapping, built once at startup.
"""

import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Type

import httpx

from vitalis.config import Settings
from vitalis.services.connectors.apple import AppleHealthConnector
from vitalis.services.connectors.base import BaseConnector
from vitalis.services.connectors.demo import DemoConnector
from vitalis.services.connectors.fire_boltt import FireBolttConnector
from vitalis.services.connectors.fitbit import FitbitConnector
from vitalis.services.connectors.oura import OuraConnector
from vitalis.services.connectors.samsung import SamsungHealthConnector
from vitalis.services.connectors.xiaomi import XiaomiConnector
from vitalis.services.errors import UnknownProviderError
from vitalis.services.sync_types import ProviderId

logger = logging.getLogger(__name__)

PROVIDER_CONNECTORS: Dict[ProviderId, Type[BaseConnector]] = {
    ProviderId.SAMSUNG: SamsungHealthConnector,
    ProviderId.FITBIT: FitbitConnector,
    ProviderId.OURA: OuraConnector,
    ProviderId.APPLE: AppleHealthConnector,
    ProviderId.XIAOMI: XiaomiConnector,
    ProviderId.FIRE_BOLTT: FireBolttConnector,
}

BASE_URL_SETTINGS = {
    ProviderId.APPLE: "APPLE_HEALTH_RELAY_URL",
    ProviderId.FIRE_BOLTT: "FIRE_BOLTT_API_URL",
}


class ConnectorRegistry:
    def __init__(self, connectors: Iterable[BaseConnector]):
        self._connectors: Dict[ProviderId, BaseConnector] = {}
        for connector in connectors:
            if connector.provider in self._connectors:
                raise ValueError(f"Duplicate connector for {connector.provider.value}")
            self._connectors[connector.provider] = connector

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ConnectorRegistry":
        common = dict(
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            max_rate_limit_retries=settings.RATE_LIMIT_MAX_RETRIES,
            refresh_margin=timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS),
            transport=transport,
        )

        connectors: List[BaseConnector] = []
        for provider, connector_cls in PROVIDER_CONNECTORS.items():
            credentials = settings.provider_client_credentials(connector_cls.ENV_PREFIX)
            base_url_setting = BASE_URL_SETTINGS.get(provider)
            base_url = getattr(settings, base_url_setting) if base_url_setting else None
            connector = connector_cls(
                credentials["client_id"],
                credentials["client_secret"],
                base_url=base_url,
                **common,
            )
            if not connector.is_configured:
                logger.info(f"{connector.DISPLAY_NAME}: client credentials not configured")
            connectors.append(connector)

        if settings.DEMO_MODE:
            logger.warning("DEMO_MODE enabled: synthetic 'demo' provider registered")
            connectors.append(DemoConnector(**common))

        return cls(connectors)

    def get(self, provider: ProviderId) -> BaseConnector:
        connector = self._connectors.get(provider)
        if connector is None:
            raise UnknownProviderError(f"No connector registered for {provider.value}")
        return connector

    def resolve(self, provider_name: str) -> BaseConnector:
        """Look up a connector by its public name (e.g. ``fitbit``)."""
        try:
            provider = ProviderId(provider_name)
        except ValueError:
            raise UnknownProviderError(f"Unknown provider: {provider_name}")
        return self.get(provider)

    def __contains__(self, provider: ProviderId) -> bool:
        return provider in self._connectors

    @property
    def providers(self) -> List[ProviderId]:
        return list(self._connectors)
