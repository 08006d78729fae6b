"""
Scripted provider APIs for httpx.MockTransport and small data builders.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from vitalis.services.sync_types import Credential, ProviderId


class ScriptedAPI:
    """
    Route table keyed by URL path. Each route holds a queue of responses;
    the last response repeats once the queue is drained.
    """

    def __init__(self, fallback: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.routes: Dict[str, List[Dict[str, Any]]] = {}
        self.requests: List[httpx.Request] = []
        self.fallback = fallback

    def add(self, path: str, status: int = 200, json: Any = None, headers: Optional[Dict[str, str]] = None,
            error: Optional[type] = None):
        self.routes.setdefault(path, []).append(
            {"status": status, "json": json, "headers": headers or {}, "error": error}
        )
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if queue is None:
            if self.fallback is not None:
                return self.fallback(request)
            return httpx.Response(404, json={"error": "not_found"})

        scripted = queue.pop(0) if len(queue) > 1 else queue[0]
        if scripted["error"] is not None:
            raise scripted["error"]("scripted failure", request=request)
        return httpx.Response(scripted["status"], json=scripted["json"], headers=scripted["headers"])

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def count(self, path: str) -> int:
        return self.paths().count(path)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def fitbit_heart_day(day: str, readings: List[Tuple[str, int]]) -> Dict[str, Any]:
    return {
        "activities-heart": [{"dateTime": day, "value": {"restingHeartRate": 61}}],
        "activities-heart-intraday": {
            "dataset": [{"time": time, "value": bpm} for time, bpm in readings],
            "datasetInterval": 15,
            "datasetType": "minute",
        },
    }


def fitbit_empty_ranges(request: httpx.Request) -> httpx.Response:
    """Empty responses for the Fitbit range endpoints."""
    path = request.url.path
    if "/activities/steps/" in path:
        return httpx.Response(200, json={"activities-steps": []})
    if "/activities/calories/" in path:
        return httpx.Response(200, json={"activities-calories": []})
    if "/sleep/" in path:
        return httpx.Response(200, json={"sleep": []})
    if "/spo2/" in path:
        return httpx.Response(200, json=[])
    return httpx.Response(404, json={"error": "not_found"})


FIVE_READINGS = [
    ("08:00:00", 62),
    ("08:15:00", 64),
    ("08:30:00", 70),
    ("08:45:00", 75),
    ("09:00:00", 68),
]


def fitbit_api_with_two_days() -> ScriptedAPI:
    """Fitbit API holding 10 heart rate readings over 2024-01-01 and 2024-01-02."""
    api = ScriptedAPI(fallback=fitbit_empty_ranges)
    for day in ("2024-01-01", "2024-01-02"):
        api.add(f"/1/user/-/activities/heart/date/{day}/1d/15min.json", json=fitbit_heart_day(day, FIVE_READINGS))
    return api


SYNC_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
SYNC_END = datetime(2024, 1, 2, 23, 59, tzinfo=timezone.utc)


def make_credential(
    provider: ProviderId = ProviderId.FITBIT,
    expires_in: Optional[timedelta] = timedelta(hours=1),
    access_token: str = "access-1",
    refresh_token: Optional[str] = "refresh-1",
    external_account_id: Optional[str] = "ACC123",
) -> Credential:
    return Credential(
        provider=provider,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + expires_in if expires_in is not None else None,
        scopes=["heartrate"],
        external_account_id=external_account_id,
    )


def token_response(access_token: str = "access-2", refresh_token: str = "refresh-2", **extra) -> Dict[str, Any]:
    body = {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": "Bearer",
        "expires_in": 28800,
        "scope": "heartrate activity",
    }
    body.update(extra)
    return body
