from vitalis.services.connectors.base import BaseConnector
from vitalis.services.connectors.apple import AppleHealthConnector
from vitalis.services.connectors.demo import DemoConnector
from vitalis.services.connectors.fire_boltt import FireBolttConnector
from vitalis.services.connectors.fitbit import FitbitConnector
from vitalis.services.connectors.oura import OuraConnector
from vitalis.services.connectors.samsung import SamsungHealthConnector
from vitalis.services.connectors.xiaomi import XiaomiConnector
from vitalis.services.connectors.registry import ConnectorRegistry, PROVIDER_CONNECTORS

__all__ = [
    "BaseConnector",
    "AppleHealthConnector",
    "DemoConnector",
    "FireBolttConnector",
    "FitbitConnector",
    "OuraConnector",
    "SamsungHealthConnector",
    "XiaomiConnector",
    "ConnectorRegistry",
    "PROVIDER_CONNECTORS",
]
