# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/classifier.py
"""
Anomaly classification for the four civic data domains.

Every function here is pure and total: missing input yields an empty list and
nothing raises. The per-reading helpers return ``None`` for readings that are
not anomalous, which is how the cron pipeline filters readings before they
reach the subscription matcher.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .schema import (
    AIR_QUALITY,
    ALERT,
    ATTENTION,
    RIVER,
    STATUS_ALERT,
    STATUS_ATTENTION,
    STATUS_NORMAL,
    TRAFFIC,
    WEATHER,
    AirQualityReading,
    Anomaly,
    Reading,
    RiverReading,
    TrafficIncident,
    WeatherAlert,
    WeatherObservation,
)

# Seasonal temperature band (°F) per calendar month, 1 = January.
SEASONAL_TEMPS: Dict[int, Tuple[float, float]] = {
    1: (10, 30),
    2: (15, 35),
    3: (25, 50),
    4: (40, 65),
    5: (50, 75),
    6: (60, 85),
    7: (65, 90),
    8: (65, 90),
    9: (55, 80),
    10: (40, 65),
    11: (25, 45),
    12: (15, 32),
}
SEASONAL_MARGIN_F = 10

HIGH_WIND_MPH = 25
DAMAGING_WIND_MPH = 40

AQI_ALERT_ABOVE = 150
AQI_ATTENTION_ABOVE = 100

ARTERIAL_ROADS: Tuple[str, ...] = ("I-29", "I-129", "US-20")
MAJOR_TRAFFIC_SEVERITIES = frozenset({"major", "critical"})

SEVERE_WEATHER = frozenset({"Extreme", "Severe"})

RIVER_STAGE_SEVERITY = {
    "major": (ALERT, "at major flood stage"),
    "moderate": (ALERT, "at moderate flood stage"),
    "minor": (ATTENTION, "at minor flood stage"),
    "action": (ATTENTION, "approaching action stage"),
}


def _fmt(value: float) -> str:
    return f"{value:g}"


# ---- Weather ----

def classify_weather_observation(
    observation: Optional[WeatherObservation],
    month: Optional[int] = None,
) -> List[Anomaly]:
    """Temperature against the seasonal band, then sustained wind."""
    anomalies: List[Anomaly] = []
    if observation is None:
        return anomalies

    month = month or datetime.now().month
    low, high = SEASONAL_TEMPS.get(month, SEASONAL_TEMPS[1])

    temp = observation.temperature
    if temp is not None:
        if temp < low - SEASONAL_MARGIN_F:
            anomalies.append(Anomaly(
                WEATHER, ATTENTION,
                f"Temperature ({_fmt(temp)}°F) is significantly below normal for this time of year",
            ))
        elif temp > high + SEASONAL_MARGIN_F:
            anomalies.append(Anomaly(
                WEATHER, ATTENTION,
                f"Temperature ({_fmt(temp)}°F) is significantly above normal for this time of year",
            ))

    wind = observation.wind_speed
    if wind is not None and wind > HIGH_WIND_MPH:
        gust = f" with gusts to {_fmt(observation.wind_gust)} mph" if observation.wind_gust else ""
        anomalies.append(Anomaly(
            WEATHER,
            ALERT if wind > DAMAGING_WIND_MPH else ATTENTION,
            f"High winds at {_fmt(wind)} mph{gust}",
        ))

    return anomalies


def classify_weather_alert(alert: WeatherAlert) -> Anomaly:
    severity = ALERT if alert.severity in SEVERE_WEATHER else ATTENTION
    return Anomaly(WEATHER, severity, alert.headline or alert.event)


def classify_weather(
    observation: Optional[WeatherObservation],
    alerts: Optional[Iterable[WeatherAlert]],
    month: Optional[int] = None,
) -> List[Anomaly]:
    anomalies = classify_weather_observation(observation, month=month)
    anomalies.extend(classify_weather_alert(a) for a in (alerts or ()))
    return anomalies


# ---- River ----

def classify_river_reading(reading: RiverReading) -> Optional[Anomaly]:
    rule = RIVER_STAGE_SEVERITY.get(reading.flood_stage)
    if rule is None:
        return None
    severity, phrase = rule
    height = f" ({_fmt(reading.gauge_height)}ft)" if reading.gauge_height is not None else ""
    return Anomaly(RIVER, severity, f"{reading.site_name} {phrase}{height}")


def classify_rivers(readings: Optional[Iterable[RiverReading]]) -> List[Anomaly]:
    return [a for a in (classify_river_reading(r) for r in (readings or ())) if a is not None]


# ---- Air quality ----

def classify_air_quality(reading: Optional[AirQualityReading]) -> Optional[Anomaly]:
    if reading is None:
        return None
    if reading.aqi > AQI_ALERT_ABOVE:
        return Anomaly(AIR_QUALITY, ALERT, f"Air quality is unhealthy (AQI: {reading.aqi})")
    if reading.aqi > AQI_ATTENTION_ABOVE:
        return Anomaly(
            AIR_QUALITY, ATTENTION,
            f"Air quality is unhealthy for sensitive groups (AQI: {reading.aqi})",
        )
    return None


# ---- Traffic ----

def is_arterial(road_name: str, arterials: Sequence[str] = ARTERIAL_ROADS) -> bool:
    return any(road in (road_name or "") for road in arterials)


def classify_traffic_incident(
    incident: TrafficIncident,
    arterials: Sequence[str] = ARTERIAL_ROADS,
) -> Optional[Anomaly]:
    if incident.severity not in MAJOR_TRAFFIC_SEVERITIES or not is_arterial(incident.road_name, arterials):
        return None
    severity = ALERT if incident.severity == "critical" else ATTENTION
    label = incident.description or incident.type
    return Anomaly(TRAFFIC, severity, f"{label} on {incident.road_name}")


def classify_traffic(
    incidents: Optional[Iterable[TrafficIncident]],
    arterials: Sequence[str] = ARTERIAL_ROADS,
) -> List[Anomaly]:
    out = (classify_traffic_incident(i, arterials) for i in (incidents or ()))
    return [a for a in out if a is not None]


# ---- Dispatch + reduction ----

def classify_reading(reading: Reading) -> Optional[Anomaly]:
    """Anomaly for one deliverable reading, or None when it is not alert-worthy."""
    if isinstance(reading, WeatherAlert):
        return classify_weather_alert(reading)
    if isinstance(reading, RiverReading):
        return classify_river_reading(reading)
    if isinstance(reading, AirQualityReading):
        return classify_air_quality(reading)
    if isinstance(reading, TrafficIncident):
        return classify_traffic_incident(reading)
    return None


def overall_status(anomalies: Iterable[Anomaly]) -> str:
    """alert > attention > normal; info anomalies never raise the status."""
    severities = {a.severity for a in anomalies}
    if ALERT in severities:
        return STATUS_ALERT
    if ATTENTION in severities:
        return STATUS_ATTENTION
    return STATUS_NORMAL
