from vitalis.models.user import User
from vitalis.models.health_sync import (
    ProviderCredentialRecord,
    DeviceConnection,
    HealthRecord,
)

__all__ = [
    "User",
    "ProviderCredentialRecord",
    "DeviceConnection",
    "HealthRecord",
]
