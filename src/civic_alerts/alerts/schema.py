# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/schema.py
"""
Typed records flowing through the alert pipeline.

Readings are immutable snapshots normalized from the upstream sources. Each
deliverable reading exposes a deterministic ``source_id`` which is the
discriminator of the dedup ledger key (identity, alert_type, source_id).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple, Union

# ---- Alert types ----
WEATHER = "weather"
RIVER = "river"
AIR_QUALITY = "air_quality"
TRAFFIC = "traffic"
ALERT_TYPES: Tuple[str, ...] = (WEATHER, RIVER, AIR_QUALITY, TRAFFIC)

# ---- Anomaly severities (ordered) ----
INFO = "info"
ATTENTION = "attention"
ALERT = "alert"
SEVERITIES: Tuple[str, ...] = (INFO, ATTENTION, ALERT)

# ---- Overall status ----
STATUS_NORMAL = "normal"
STATUS_ATTENTION = "attention"
STATUS_ALERT = "alert"

# ---- Ledger identity kinds ----
IDENTITY_USER = "user"
IDENTITY_DEVICE = "device"


def _date_part(timestamp: str) -> str:
    """YYYY-MM-DD of an ISO timestamp; falls back to the raw prefix."""
    try:
        return datetime.fromisoformat(str(timestamp).replace("Z", "+00:00")).date().isoformat()
    except (TypeError, ValueError):
        return str(timestamp or "")[:10]


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WeatherAlert:
    id: str
    event: str
    severity: str
    headline: str = ""
    certainty: str = ""
    urgency: str = ""
    description: str = ""
    instruction: Optional[str] = None
    effective: str = ""
    expires: str = ""
    area_desc: str = ""

    @property
    def source_id(self) -> str:
        return self.id


@dataclass(frozen=True)
class WeatherObservation:
    temperature: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_gust: Optional[float] = None
    conditions: str = ""
    timestamp: str = ""


@dataclass(frozen=True)
class RiverReading:
    site_id: str
    site_name: str
    gauge_height: Optional[float]
    flood_stage: str = "normal"   # normal, action, minor, moderate, major
    timestamp: str = ""

    def __post_init__(self):
        object.__setattr__(self, "flood_stage", (self.flood_stage or "normal").lower())

    @property
    def source_id(self) -> str:
        return f"{self.site_id}-{self.flood_stage}-{_date_part(self.timestamp)}"


@dataclass(frozen=True)
class AirQualityReading:
    aqi: int
    category: str = "Unknown"
    primary_pollutant: str = "Unknown"
    timestamp: str = ""

    @property
    def bucket(self) -> str:
        if self.aqi >= 101:
            return "unhealthy"
        if self.aqi >= 51:
            return "moderate"
        return "good"

    @property
    def source_id(self) -> str:
        return f"aqi-{self.bucket}-{_date_part(self.timestamp)}"


@dataclass(frozen=True)
class TrafficIncident:
    id: str
    type: str
    severity: str = "moderate"    # minor, moderate, major, critical
    description: str = ""
    road_name: str = "Unknown Road"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    start_time: str = ""

    @property
    def source_id(self) -> str:
        return self.id


Reading = Union[WeatherAlert, RiverReading, AirQualityReading, TrafficIncident]

READING_TYPES: Dict[type, str] = {
    WeatherAlert: WEATHER,
    RiverReading: RIVER,
    AirQualityReading: AIR_QUALITY,
    TrafficIncident: TRAFFIC,
}


def alert_type_of(reading: Reading) -> str:
    try:
        return READING_TYPES[type(reading)]
    except KeyError:
        raise TypeError(f"Not a deliverable reading: {reading!r}") from None


@dataclass(frozen=True)
class Anomaly:
    domain: str
    severity: str
    message: str


# ---------------------------------------------------------------------------
# Subscription configs (tagged union)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WeatherAlertConfig:
    severities: Tuple[str, ...] = ("Severe", "Extreme")
    events: Tuple[str, ...] = ()
    type: str = field(default=WEATHER, init=False)


@dataclass(frozen=True)
class RiverAlertConfig:
    stages: Tuple[str, ...] = ("minor", "moderate", "major")
    site_ids: Tuple[str, ...] = ()
    type: str = field(default=RIVER, init=False)


@dataclass(frozen=True)
class AirQualityAlertConfig:
    min_aqi: int = 101
    type: str = field(default=AIR_QUALITY, init=False)


@dataclass(frozen=True)
class TrafficAlertConfig:
    severities: Tuple[str, ...] = ("major", "critical")
    type: str = field(default=TRAFFIC, init=False)


SubscriptionConfig = Union[WeatherAlertConfig, RiverAlertConfig, AirQualityAlertConfig, TrafficAlertConfig]


def _str_lists(raw: Mapping[str, Any], **fields: Tuple[str, ...]) -> Dict[str, Tuple[str, ...]]:
    """Pick list-of-string fields out of a raw config; absent keys keep their defaults."""
    out: Dict[str, Tuple[str, ...]] = {}
    for name, keys in fields.items():
        for key in keys:
            value = raw.get(key)
            if value is None:
                continue
            if isinstance(value, str) or not hasattr(value, "__iter__"):
                raise ValueError(f"'{key}' must be a list of strings, got {value!r}")
            out[name] = tuple(str(v) for v in value)
            break
    return out


def parse_subscription_config(alert_type: str, raw: Optional[Mapping[str, Any]]) -> SubscriptionConfig:
    """
    Build the typed config variant for an alert type from its stored JSON object.

    Accepts both snake_case and the camelCase keys written by the settings UI
    (``minAqi``, ``siteIds``). Keys that are absent fall back to the variant's
    defaults; an explicitly empty list stays empty.

    Raises:
        ValueError: unknown alert type or malformed config
    """
    raw = raw or {}
    if alert_type == WEATHER:
        return WeatherAlertConfig(**_str_lists(raw, severities=("severities",), events=("events",)))
    if alert_type == RIVER:
        values = _str_lists(raw, stages=("stages",), site_ids=("site_ids", "siteIds"))
        if "stages" in values:
            values["stages"] = tuple(s.lower() for s in values["stages"])
        return RiverAlertConfig(**values)
    if alert_type == AIR_QUALITY:
        value = raw.get("min_aqi", raw.get("minAqi"))
        if value is None:
            return AirQualityAlertConfig()
        try:
            return AirQualityAlertConfig(min_aqi=int(value))
        except (TypeError, ValueError):
            raise ValueError(f"'minAqi' must be a number, got {value!r}") from None
    if alert_type == TRAFFIC:
        return TrafficAlertConfig(**_str_lists(raw, severities=("severities",)))
    raise ValueError(f"Unknown alert type: {alert_type!r}")


def config_to_dict(config: SubscriptionConfig) -> Dict[str, Any]:
    """Inverse of parse_subscription_config, in the stored camelCase shape."""
    if isinstance(config, WeatherAlertConfig):
        return {"severities": list(config.severities), "events": list(config.events)}
    if isinstance(config, RiverAlertConfig):
        return {"stages": list(config.stages), "siteIds": list(config.site_ids)}
    if isinstance(config, AirQualityAlertConfig):
        return {"minAqi": config.min_aqi}
    return {"severities": list(config.severities)}


# ---------------------------------------------------------------------------
# Subscribers, ledger rows, payloads, results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Subscription:
    subscriber_id: str
    alert_type: str
    config: SubscriptionConfig
    enabled: bool = True


@dataclass(frozen=True)
class DeviceSubscription:
    device_id: str
    alert_type: str
    push_token: str


@dataclass(frozen=True)
class TriggeredAlertRecord:
    identity_kind: str
    identity: str
    alert_type: str
    source_id: str
    triggered_at: str
    payload_snapshot: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PushPayload:
    title: str
    body: str
    tag: str
    url: str

    def to_web_push(self) -> Dict[str, Any]:
        return {"title": self.title, "body": self.body, "tag": self.tag, "url": self.url}

    def to_mobile_message(self, token: str) -> Dict[str, Any]:
        return {
            "to": token,
            "title": self.title,
            "body": self.body,
            "data": {"url": self.url, "tag": self.tag},
            "sound": "default",
            "priority": "high",
        }


@dataclass
class DeliveryResult:
    sent: int = 0
    failed: int = 0
    expired: list = field(default_factory=list)

    def merge(self, other: "DeliveryResult") -> "DeliveryResult":
        return DeliveryResult(
            sent=self.sent + other.sent,
            failed=self.failed + other.failed,
            expired=self.expired + other.expired,
        )


@dataclass
class ReceiptCheckResult:
    checked: int = 0
    ok: int = 0
    errors: int = 0
    deactivated: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"checked": self.checked, "ok": self.ok, "errors": self.errors, "deactivated": self.deactivated}


@dataclass
class DomainResult:
    checked: int = 0
    matched: int = 0
    notified: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"checked": self.checked, "matched": self.matched, "notified": self.notified}
