"""
Sync Type Definitions

Dataclasses and enums shared by connectors, normalization, the credential
store and the orchestrator.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ProviderId(str, Enum):
    SAMSUNG = "samsung_health"
    FITBIT = "fitbit"
    OURA = "oura"
    APPLE = "apple_health"
    XIAOMI = "xiaomi"
    FIRE_BOLTT = "fire_boltt"
    DEMO = "demo"


class MetricType(str, Enum):
    HEART_RATE = "heart_rate"
    SPO2 = "spo2"
    STEPS = "steps"
    SLEEP_DURATION = "sleep_duration"
    CALORIES = "calories"


CANONICAL_UNITS: Dict[MetricType, str] = {
    MetricType.HEART_RATE: "bpm",
    MetricType.SPO2: "%",
    MetricType.STEPS: "count",
    MetricType.SLEEP_DURATION: "minutes",
    MetricType.CALORIES: "kcal",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """OAuth credential for one (user, provider). Tokens are opaque."""
    provider: ProviderId
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    external_account_id: Optional[str] = None
    token_type: str = "Bearer"

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return ensure_utc(self.expires_at) - now < margin

    def with_tokens(
        self,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
    ) -> "Credential":
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=expires_at,
            scopes=scopes if scopes is not None else self.scopes,
        )


@dataclass
class RawPayload:
    """Provider response pages for one metric, in request order."""
    provider: ProviderId
    metric: MetricType
    pages: List[Any] = field(default_factory=list)
    truncated: bool = False  # page limit hit before the range was covered


@dataclass
class FetchResult:
    payload: RawPayload
    credential: Credential
    refreshed: bool = False


@dataclass(frozen=True)
class NormalizedHealthRecord:
    user_id: str
    metric_type: MetricType
    value: float
    unit: str
    timestamp: datetime
    source: ProviderId
    confidence: float

    @property
    def natural_key(self):
        return (self.user_id, self.source.value, self.metric_type.value, self.timestamp)


@dataclass
class NormalizationResult:
    records: List[NormalizedHealthRecord] = field(default_factory=list)
    dropped: int = 0


@dataclass
class SyncResult:
    """Outcome of one provider's pipeline within one sync invocation"""
    success: bool
    records_processed: int = 0
    error: Optional[str] = None
    message: Optional[str] = None
    records_inserted: int = 0
    records_dropped: int = 0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "recordsProcessed": self.records_processed,
            "recordsInserted": self.records_inserted,
            "recordsDropped": self.records_dropped,
        }
        if self.error:
            data["error"] = self.error
        if self.message:
            data["message"] = self.message
        if self.skipped:
            data["skipped"] = True
        return data


@dataclass
class DeviceConnectionStatus:
    """Fields the orchestrator and OAuth callback write to a DeviceConnection."""
    is_connected: bool
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_error: Optional[str] = None
    last_records_processed: Optional[int] = None
    device_name: Optional[str] = None
    manufacturer: Optional[str] = None
    device_metadata: Optional[Dict[str, Any]] = None
