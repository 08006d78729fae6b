"""
Health Data Normalization

Maps raw provider payloads onto NormalizedHealthRecords in canonical units:

    heart_rate      bpm (integer)
    spo2            percent, 0-100
    steps           count
    sleep_duration  minutes
    calories        kcal

Each provider has an extractor that walks its response pages and yields
``(timestamp, value, unit)`` per entry. Entries that cannot be mapped, or
whose values are physiologically implausible, are dropped and counted;
they never abort the batch.
"""

import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from vitalis.services.errors import NormalizationError
from vitalis.services.sync_types import (
    CANONICAL_UNITS,
    MetricType,
    NormalizationResult,
    NormalizedHealthRecord,
    ProviderId,
    RawPayload,
)

logger = logging.getLogger(__name__)

# (timestamp, value, unit) or None for entries that are not readings (e.g. "in bed")
RawEntry = Optional[Tuple[Any, Any, Optional[str]]]

# Static per-source accuracy estimates
CONFIDENCE: Dict[ProviderId, Dict[MetricType, float]] = {
    ProviderId.FITBIT: {
        MetricType.HEART_RATE: 0.95,
        MetricType.SPO2: 0.90,
        MetricType.STEPS: 0.98,
        MetricType.SLEEP_DURATION: 0.90,
        MetricType.CALORIES: 0.85,
    },
    ProviderId.SAMSUNG: {
        MetricType.HEART_RATE: 0.90,
        MetricType.SPO2: 0.88,
        MetricType.STEPS: 0.98,
        MetricType.SLEEP_DURATION: 0.90,
        MetricType.CALORIES: 0.85,
    },
    ProviderId.OURA: {
        MetricType.HEART_RATE: 0.92,
        MetricType.SPO2: 0.90,
        MetricType.STEPS: 0.90,
        MetricType.SLEEP_DURATION: 0.95,
        MetricType.CALORIES: 0.85,
    },
    ProviderId.APPLE: {
        MetricType.HEART_RATE: 0.95,
        MetricType.SPO2: 0.92,
        MetricType.STEPS: 0.98,
        MetricType.SLEEP_DURATION: 0.90,
        MetricType.CALORIES: 0.88,
    },
    ProviderId.XIAOMI: {
        MetricType.HEART_RATE: 0.92,
        MetricType.SPO2: 0.90,
        MetricType.STEPS: 0.95,
        MetricType.SLEEP_DURATION: 0.85,
        MetricType.CALORIES: 0.80,
    },
    ProviderId.FIRE_BOLTT: {
        MetricType.HEART_RATE: 0.88,
        MetricType.SPO2: 0.85,
        MetricType.STEPS: 0.90,
        MetricType.SLEEP_DURATION: 0.80,
        MetricType.CALORIES: 0.75,
    },
    ProviderId.DEMO: {metric: 0.5 for metric in MetricType},
}

HEART_RATE_RANGE = (20, 250)
SPO2_RANGE = (50.0, 100.0)
MAX_DAILY_STEPS = 200_000
MAX_SLEEP_MINUTES = 24 * 60
MAX_DAILY_KCAL = 20_000

SLEEP_UNIT_FACTORS = {
    "minutes": 1.0, "minute": 1.0, "min": 1.0,
    "s": 1 / 60, "sec": 1 / 60, "seconds": 1 / 60,
    "ms": 1 / 60_000, "milliseconds": 1 / 60_000,
    "h": 60.0, "hr": 60.0, "hours": 60.0,
}

CALORIE_UNIT_FACTORS = {
    "kcal": 1.0, "cal": 1.0, "calories": 1.0,
    "kj": 1 / 4.184,
}

APPLE_ASLEEP_VALUES = {
    "asleep",
    "asleepUnspecified",
    "asleepCore",
    "asleepDeep",
    "asleepREM",
    "HKCategoryValueSleepAnalysisAsleep",
    "HKCategoryValueSleepAnalysisAsleepUnspecified",
    "HKCategoryValueSleepAnalysisAsleepCore",
    "HKCategoryValueSleepAnalysisAsleepDeep",
    "HKCategoryValueSleepAnalysisAsleepREM",
}


# ----------------------------------------------------------------------
# Value and timestamp coercion
# ----------------------------------------------------------------------

def parse_number(raw: Any) -> float:
    if isinstance(raw, bool) or raw is None:
        raise NormalizationError(f"Not a number: {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise NormalizationError(f"Not a number: {raw!r}")
    if math.isnan(value) or math.isinf(value):
        raise NormalizationError(f"Not a finite number: {raw!r}")
    return value


def parse_timestamp(raw: Any) -> datetime:
    """
    Parse provider timestamps into aware UTC datetimes.

    Accepts datetimes, ISO-8601 strings (with or without offset, ``Z``
    suffix, or date only) and epoch numbers in seconds or milliseconds.
    Naive values are taken as UTC.
    """
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, date):
        parsed = datetime(raw.year, raw.month, raw.day)
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        seconds = raw / 1000 if raw > 1e11 else raw
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise NormalizationError(f"Epoch out of range: {raw!r}")
    elif isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise NormalizationError(f"Unparseable timestamp: {raw!r}")
    else:
        raise NormalizationError(f"Missing timestamp: {raw!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).replace(microsecond=0)


def _in_range(value: float, low: float, high: float, metric: MetricType) -> float:
    if not low <= value <= high:
        raise NormalizationError(f"Implausible {metric.value}: {value}")
    return value


def coerce_value(metric: MetricType, raw_value: Any, unit: Optional[str]) -> float:
    """Convert a raw value to the canonical unit for ``metric`` and range-check it."""
    value = parse_number(raw_value)
    unit_key = (unit or "").strip()

    if metric == MetricType.HEART_RATE:
        if unit_key and unit_key.lower() not in ("bpm", "count/min", "beats/min", "/min"):
            raise NormalizationError(f"Unknown heart rate unit: {unit}")
        return float(round(_in_range(value, *HEART_RATE_RANGE, metric)))

    if metric == MetricType.SPO2:
        if unit_key.lower() in ("fraction", "ratio") or (unit_key in ("", "%") and 0 < value <= 1.0):
            value *= 100
        elif unit_key and unit_key != "%":
            raise NormalizationError(f"Unknown SpO2 unit: {unit}")
        return round(_in_range(value, *SPO2_RANGE, metric), 1)

    if metric == MetricType.STEPS:
        if unit_key and unit_key.lower() not in ("count", "steps"):
            raise NormalizationError(f"Unknown step unit: {unit}")
        if value != int(value):
            raise NormalizationError(f"Fractional step count: {value}")
        return float(_in_range(value, 0, MAX_DAILY_STEPS, metric))

    if metric == MetricType.SLEEP_DURATION:
        factor = SLEEP_UNIT_FACTORS.get(unit_key.lower() or "minutes")
        if factor is None:
            raise NormalizationError(f"Unknown sleep unit: {unit}")
        return round(_in_range(value * factor, 0, MAX_SLEEP_MINUTES, metric), 1)

    if metric == MetricType.CALORIES:
        # "Cal" is a food calorie (kcal); lowercase "cal" is a small calorie
        if unit_key == "cal":
            factor = 1 / 1000
        else:
            factor = CALORIE_UNIT_FACTORS.get(unit_key.lower() or "kcal")
        if factor is None:
            raise NormalizationError(f"Unknown energy unit: {unit}")
        return round(_in_range(value * factor, 0, MAX_DAILY_KCAL, metric), 1)

    raise NormalizationError(f"Unsupported metric: {metric}")


# ----------------------------------------------------------------------
# Provider extractors
# ----------------------------------------------------------------------

def _first(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _list_at(page: Any, *path: str) -> List[Any]:
    current = page
    for key in path:
        if not isinstance(current, dict):
            raise NormalizationError(f"Unexpected page shape at {key}")
        current = current.get(key)
    if current is None:
        return []
    if not isinstance(current, list):
        raise NormalizationError(f"Expected a list at {'.'.join(path)}")
    return current


def _fitbit_entries(pages: List[Any], metric: MetricType) -> Iterator[RawEntry]:
    for page in pages:
        if metric == MetricType.HEART_RATE:
            summary = _list_at(page, "activities-heart")
            day = summary[0].get("dateTime") if summary else None
            intraday = page.get("activities-heart-intraday") or {}
            dataset = intraday.get("dataset") or []
            if dataset:
                for point in dataset:
                    yield f"{day}T{point.get('time')}", point.get("value"), "bpm"
            else:
                for entry in summary:
                    resting = (entry.get("value") or {}).get("restingHeartRate")
                    if resting is not None:
                        yield entry.get("dateTime"), resting, "bpm"

        elif metric == MetricType.SPO2:
            entries = page if isinstance(page, list) else [page]
            for entry in entries:
                yield entry.get("dateTime"), (entry.get("value") or {}).get("avg"), "%"

        elif metric == MetricType.STEPS:
            for entry in _list_at(page, "activities-steps"):
                yield entry.get("dateTime"), entry.get("value"), "count"

        elif metric == MetricType.CALORIES:
            for entry in _list_at(page, "activities-calories"):
                yield entry.get("dateTime"), entry.get("value"), "kcal"

        elif metric == MetricType.SLEEP_DURATION:
            for entry in _list_at(page, "sleep"):
                yield entry.get("startTime") or entry.get("dateOfSleep"), entry.get("minutesAsleep"), "minutes"


SAMSUNG_VALUE_KEYS = {
    MetricType.HEART_RATE: ("heart_rate", "value"),
    MetricType.SPO2: ("spo2", "oxygen_saturation", "value"),
    MetricType.STEPS: ("step_count", "count", "value"),
    MetricType.SLEEP_DURATION: ("sleep_duration", "duration", "value"),
    MetricType.CALORIES: ("calorie", "calories", "value"),
}

SAMSUNG_UNITS = {
    MetricType.HEART_RATE: "bpm",
    MetricType.SPO2: "%",
    MetricType.STEPS: "count",
    MetricType.SLEEP_DURATION: "s",
    MetricType.CALORIES: "kcal",
}


def _samsung_entries(pages: List[Any], metric: MetricType) -> Iterator[RawEntry]:
    for page in pages:
        for item in _list_at(page, "result"):
            yield (
                _first(item, "start_time", "day_time", "create_time"),
                _first(item, *SAMSUNG_VALUE_KEYS[metric]),
                SAMSUNG_UNITS[metric],
            )


def _oura_entries(pages: List[Any], metric: MetricType) -> Iterator[RawEntry]:
    for page in pages:
        for item in _list_at(page, "data"):
            if metric == MetricType.HEART_RATE:
                yield item.get("timestamp"), item.get("bpm"), "bpm"
            elif metric == MetricType.SPO2:
                yield item.get("day"), (item.get("spo2_percentage") or {}).get("average"), "%"
            elif metric == MetricType.STEPS:
                yield item.get("day"), item.get("steps"), "count"
            elif metric == MetricType.CALORIES:
                yield item.get("day"), _first(item, "total_calories", "active_calories"), "kcal"
            elif metric == MetricType.SLEEP_DURATION:
                yield _first(item, "bedtime_start", "day"), item.get("total_sleep_duration"), "s"


def _apple_entries(pages: List[Any], metric: MetricType) -> Iterator[RawEntry]:
    for page in pages:
        for sample in _list_at(page, "samples"):
            if metric == MetricType.SLEEP_DURATION:
                if sample.get("value") not in APPLE_ASLEEP_VALUES:
                    yield None
                    continue
                try:
                    started = parse_timestamp(sample.get("startDate"))
                    ended = parse_timestamp(sample.get("endDate"))
                except NormalizationError as e:
                    yield e
                    continue
                yield started, (ended - started).total_seconds(), "s"
            else:
                yield sample.get("startDate"), sample.get("value"), sample.get("unit")


XIAOMI_VALUE_KEYS = {
    MetricType.HEART_RATE: ("bpm", "heart_rate", "value"),
    MetricType.SPO2: ("spo2", "value"),
    MetricType.STEPS: ("steps", "value"),
    MetricType.SLEEP_DURATION: ("duration", "sleep_minutes", "value"),
    MetricType.CALORIES: ("calories", "value"),
}


def _xiaomi_entries(pages: List[Any], metric: MetricType) -> Iterator[RawEntry]:
    for page in pages:
        for item in _list_at(page, "data", "items"):
            yield item.get("timestamp"), _first(item, *XIAOMI_VALUE_KEYS[metric]), CANONICAL_UNITS[metric]


def _fire_boltt_entries(pages: List[Any], metric: MetricType) -> Iterator[RawEntry]:
    for page in pages:
        for item in _list_at(page, "records"):
            yield item.get("recorded_at"), item.get("value"), item.get("unit")


def _demo_entries(pages: List[Any], metric: MetricType) -> Iterator[RawEntry]:
    for page in pages:
        for item in _list_at(page, "readings"):
            yield item.get("timestamp"), item.get("value"), CANONICAL_UNITS[metric]


EXTRACTORS: Dict[ProviderId, Callable[[List[Any], MetricType], Iterable[RawEntry]]] = {
    ProviderId.FITBIT: _fitbit_entries,
    ProviderId.SAMSUNG: _samsung_entries,
    ProviderId.OURA: _oura_entries,
    ProviderId.APPLE: _apple_entries,
    ProviderId.XIAOMI: _xiaomi_entries,
    ProviderId.FIRE_BOLTT: _fire_boltt_entries,
    ProviderId.DEMO: _demo_entries,
}


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def _guarded(entries: Iterable[RawEntry]) -> Iterator[Any]:
    """
    Iterate an extractor over one page. A structural failure ends the page
    and is yielded as a single error item; entries already yielded are kept.
    """
    iterator = iter(entries)
    while True:
        try:
            yield next(iterator)
        except StopIteration:
            return
        except (NormalizationError, AttributeError, KeyError, TypeError, ValueError, IndexError) as e:
            yield e
            return


def normalize(
    provider: ProviderId,
    raw_payload: RawPayload,
    metric: MetricType,
    user_id: str,
) -> NormalizationResult:
    """Map one provider payload to normalized records; malformed entries are dropped and counted."""
    extractor = EXTRACTORS.get(provider)
    if extractor is None:
        raise NormalizationError(f"No normalizer for provider {provider}")

    confidence = CONFIDENCE[provider][metric]
    unit = CANONICAL_UNITS[metric]
    result = NormalizationResult()

    for page in raw_payload.pages:
        for entry in _guarded(extractor([page], metric)):
            if isinstance(entry, Exception):
                logger.debug(f"{provider.value}/{metric.value}: malformed entry ({entry})")
                result.dropped += 1
                continue
            if entry is None:
                continue

            raw_timestamp, raw_value, raw_unit = entry
            try:
                record = NormalizedHealthRecord(
                    user_id=user_id,
                    metric_type=metric,
                    value=coerce_value(metric, raw_value, raw_unit),
                    unit=unit,
                    timestamp=parse_timestamp(raw_timestamp),
                    source=provider,
                    confidence=confidence,
                )
            except NormalizationError as e:
                logger.debug(f"{provider.value}/{metric.value}: dropped entry ({e})")
                result.dropped += 1
                continue

            result.records.append(record)

    if result.dropped:
        logger.info(
            f"{provider.value}/{metric.value}: normalized {len(result.records)} records, dropped {result.dropped}"
        )
    return result
