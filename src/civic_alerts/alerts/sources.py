# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/sources.py
"""
Readers for the upstream civic data feeds.

Each reader GETs one JSON document and normalizes it into Readings. The
``parse_*`` functions are pure so they can be tested without HTTP; the
reader's ``fetch()`` never raises and returns ``None`` when the source could
not be read, which the cron pipeline treats as "nothing to check".
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from ..config import Settings
from .errors import UpstreamFetchError
from .schema import (
    AIR_QUALITY,
    RIVER,
    TRAFFIC,
    WEATHER,
    AirQualityReading,
    RiverReading,
    TrafficIncident,
    WeatherAlert,
    WeatherObservation,
)

logger = logging.getLogger(__name__)


def _float_or_none(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _items(data: Any, key: str) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    if not isinstance(data, dict):
        raise ValueError(f"Expected an object with '{key}', got {type(data).__name__}")
    return [d for d in (data.get(key) or []) if isinstance(d, dict)]


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def parse_weather_alerts(data: Any) -> List[WeatherAlert]:
    """``{"alerts": [...]}`` from the NWS alerts proxy."""
    alerts = []
    for a in _items(data, "alerts"):
        if not a.get("id"):
            logger.debug(f"[{WEATHER}] Skipping alert without id: {a.get('event')}")
            continue
        alerts.append(WeatherAlert(
            id=str(a["id"]),
            event=a.get("event") or "Weather Alert",
            severity=a.get("severity") or "Unknown",
            headline=a.get("headline") or "",
            certainty=a.get("certainty") or "",
            urgency=a.get("urgency") or "",
            description=a.get("description") or "",
            instruction=a.get("instruction"),
            effective=a.get("effective") or "",
            expires=a.get("expires") or "",
            area_desc=a.get("areaDesc") or a.get("area_desc") or "",
        ))
    return alerts


def parse_weather_observation(data: Any) -> Optional[WeatherObservation]:
    if not isinstance(data, dict):
        return None
    return WeatherObservation(
        temperature=_float_or_none(data.get("temperature")),
        wind_speed=_float_or_none(data.get("windSpeed", data.get("wind_speed"))),
        wind_gust=_float_or_none(data.get("windGust", data.get("wind_gust"))),
        conditions=data.get("conditions") or "",
        timestamp=data.get("timestamp") or "",
    )


def parse_river_sites(data: Any) -> List[RiverReading]:
    """``{"sites": [...]}``; a site without a flood stage is ``normal``."""
    readings = []
    for s in _items(data, "sites"):
        site_id = s.get("siteId") or s.get("site_id")
        if not site_id:
            continue
        readings.append(RiverReading(
            site_id=str(site_id),
            site_name=s.get("siteName") or s.get("site_name") or str(site_id),
            gauge_height=_float_or_none(s.get("gaugeHeight", s.get("gauge_height"))),
            flood_stage=s.get("floodStage") or s.get("flood_stage") or "normal",
            timestamp=s.get("timestamp") or s.get("dateTime") or _now_iso(),
        ))
    return readings


def parse_air_quality(data: Any) -> Optional[AirQualityReading]:
    if not isinstance(data, dict):
        return None
    try:
        aqi = int(round(float(data.get("aqi") or 0)))
    except (TypeError, ValueError):
        aqi = 0
    return AirQualityReading(
        aqi=aqi,
        category=data.get("category") or "Unknown",
        primary_pollutant=data.get("pollutant") or data.get("primaryPollutant") or "Unknown",
        timestamp=data.get("timestamp") or _now_iso(),
    )


def parse_traffic_events(data: Any) -> List[TrafficIncident]:
    """``{"events": [...]}`` from the 511 feed proxy."""
    incidents = []
    for e in _items(data, "events"):
        if not e.get("id"):
            continue
        incidents.append(TrafficIncident(
            id=str(e["id"]),
            type=e.get("type") or "Incident",
            severity=(e.get("severity") or "moderate").lower(),
            description=e.get("description") or e.get("headline") or "",
            road_name=e.get("roadName") or e.get("roadway") or "Unknown Road",
            latitude=_float_or_none(e.get("latitude")),
            longitude=_float_or_none(e.get("longitude")),
            start_time=e.get("startTime") or e.get("start_time") or "",
        ))
    return incidents


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

class JsonSourceReader:
    """
    GET one JSON endpoint and parse it.

    Subclasses set ``domain`` and implement ``parse``.
    """

    domain = ""

    def __init__(self, url: str, timeout: float = 10):
        self.url = url
        self.timeout = timeout

    def parse(self, data: Any):
        raise NotImplementedError

    def get_json(self) -> Any:
        try:
            response = requests.get(self.url, headers={"Accept": "application/json"}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise UpstreamFetchError(self.domain, f"GET {self.url} failed: {e}") from e
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFetchError(self.domain, f"Invalid JSON from {self.url}: {e}") from e

    def fetch(self):
        """Parsed readings, or None when the source is unavailable."""
        try:
            return self.parse(self.get_json())
        except UpstreamFetchError as e:
            logger.warning(str(e))
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"[{self.domain}] Unexpected payload from {self.url}: {e}")
        return None


class WeatherAlertsReader(JsonSourceReader):
    domain = WEATHER

    def parse(self, data: Any) -> List[WeatherAlert]:
        return parse_weather_alerts(data)


class WeatherObservationReader(JsonSourceReader):
    domain = WEATHER

    def parse(self, data: Any) -> Optional[WeatherObservation]:
        return parse_weather_observation(data)


class RiverGaugeReader(JsonSourceReader):
    domain = RIVER

    def parse(self, data: Any) -> List[RiverReading]:
        return parse_river_sites(data)


class AirQualityReader(JsonSourceReader):
    domain = AIR_QUALITY

    def parse(self, data: Any) -> Optional[AirQualityReading]:
        return parse_air_quality(data)


class TrafficEventsReader(JsonSourceReader):
    domain = TRAFFIC

    def parse(self, data: Any) -> List[TrafficIncident]:
        return parse_traffic_events(data)


class CivicSources:
    """The set of readers one cron run pulls from."""

    def __init__(
        self,
        weather_alerts: JsonSourceReader,
        weather_observation: JsonSourceReader,
        rivers: JsonSourceReader,
        air_quality: JsonSourceReader,
        traffic: JsonSourceReader,
    ):
        self.weather_alerts = weather_alerts
        self.weather_observation = weather_observation
        self.rivers = rivers
        self.air_quality = air_quality
        self.traffic = traffic

    def reader_for(self, alert_type: str):
        """Reader producing deliverable readings for an alert type."""
        readers = {
            WEATHER: self.weather_alerts,
            RIVER: self.rivers,
            AIR_QUALITY: self.air_quality,
            TRAFFIC: self.traffic,
        }
        if alert_type not in readers:
            raise ValueError(f"Unknown alert type: {alert_type!r}")
        return readers[alert_type]

    @classmethod
    def from_settings(cls, settings: Settings) -> "CivicSources":
        timeout = settings.http_timeout_seconds
        return cls(
            weather_alerts=WeatherAlertsReader(settings.source_url(settings.weather_alerts_path), timeout),
            weather_observation=WeatherObservationReader(settings.source_url(settings.weather_current_path), timeout),
            rivers=RiverGaugeReader(settings.source_url(settings.rivers_path), timeout),
            air_quality=AirQualityReader(settings.source_url(settings.air_quality_path), timeout),
            traffic=TrafficEventsReader(settings.source_url(settings.traffic_path), timeout),
        )
