# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/summary.py
"""
City summary: every domain's current readings, their anomalies, the overall
status and a short plain-language narrative.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .classifier import (
    MAJOR_TRAFFIC_SEVERITIES,
    classify_air_quality,
    classify_rivers,
    classify_traffic,
    classify_weather,
    overall_status,
)
from .schema import (
    ALERT,
    ATTENTION,
    AirQualityReading,
    Anomaly,
    RiverReading,
    TrafficIncident,
    WeatherAlert,
    WeatherObservation,
)
from .sources import CivicSources

logger = logging.getLogger(__name__)


def _plural(n: int, word: str) -> str:
    return f"{'is' if n == 1 else 'are'} {n} {word}{'' if n == 1 else 's'}"


def _temperature_word(temp: float) -> str:
    if temp < 32:
        return "cold"
    if temp < 50:
        return "cool"
    if temp < 70:
        return "mild"
    if temp < 85:
        return "warm"
    return "hot"


def build_narrative(
    observation: Optional[WeatherObservation],
    alerts: Sequence[WeatherAlert],
    rivers: Sequence[RiverReading],
    air_quality: Optional[AirQualityReading],
    traffic: Sequence[TrafficIncident],
    anomalies: Sequence[Anomaly],
) -> List[str]:
    """Narrative sentences, most important first."""
    parts: List[str] = []

    alert_count = sum(1 for a in anomalies if a.severity == ALERT)
    if alert_count:
        parts.append(f"Heads up - there {_plural(alert_count, 'active alert')} to be aware of.")
    elif any(a.severity == ATTENTION for a in anomalies):
        parts.append("A few things worth noting today.")
    else:
        parts.append("Pretty quiet day in Sioux City!")

    if observation is not None and observation.temperature is not None:
        temp = observation.temperature
        conditions = f" {observation.conditions.lower()}" if observation.conditions else ""
        parts.append(f"We're at {round(temp)} degrees - {_temperature_word(temp)}{conditions} conditions.")

    if alerts:
        events = list(dict.fromkeys(a.event for a in alerts))
        parts.append(f"Active weather alerts: {', '.join(events)}.")

    concerning = [r for r in rivers if r.flood_stage != "normal"]
    for r in concerning:
        height = f"{r.gauge_height:g}ft" if r.gauge_height is not None else "an unknown height"
        parts.append(f"{r.site_name.split(' at ')[0]} is at {height} - {r.flood_stage} stage.")
    if not concerning and rivers:
        parts.append("Rivers are all running normal.")

    if air_quality is not None:
        if air_quality.aqi > 100:
            parts.append(f"Air quality is {air_quality.category.lower()} with an AQI of {air_quality.aqi}.")
        elif air_quality.aqi > 50:
            parts.append("Air quality is moderate today.")

    major = sum(1 for t in traffic if t.severity in MAJOR_TRAFFIC_SEVERITIES)
    if major:
        parts.append(f"There {_plural(major, 'major traffic incident')} to watch.")

    return parts


def _anomaly_dicts(anomalies: Sequence[Anomaly]) -> List[Dict[str, str]]:
    return [asdict(a) for a in anomalies]


def build_city_summary(
    observation: Optional[WeatherObservation] = None,
    alerts: Optional[Sequence[WeatherAlert]] = None,
    rivers: Optional[Sequence[RiverReading]] = None,
    air_quality: Optional[AirQualityReading] = None,
    traffic: Optional[Sequence[TrafficIncident]] = None,
    month: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Classify every domain and assemble the summary document.

    Missing inputs are treated as "no data" and never raise.
    """
    alerts = list(alerts or [])
    rivers = list(rivers or [])
    traffic = list(traffic or [])

    weather_anomalies = classify_weather(observation, alerts, month=month)
    river_anomalies = classify_rivers(rivers)
    aq = classify_air_quality(air_quality)
    air_quality_anomalies = [aq] if aq is not None else []
    traffic_anomalies = classify_traffic(traffic)

    every = weather_anomalies + river_anomalies + air_quality_anomalies + traffic_anomalies

    return {
        "overall_status": overall_status(every),
        "weather": {
            "current": asdict(observation) if observation is not None else None,
            "alerts": [asdict(a) for a in alerts],
            "anomalies": _anomaly_dicts(weather_anomalies),
        },
        "rivers": {
            "readings": [asdict(r) for r in rivers],
            "anomalies": _anomaly_dicts(river_anomalies),
        },
        "airQuality": {
            "current": asdict(air_quality) if air_quality is not None else None,
            "anomalies": _anomaly_dicts(air_quality_anomalies),
        },
        "traffic": {
            "incidents": [asdict(t) for t in traffic],
            "anomalies": _anomaly_dicts(traffic_anomalies),
        },
        "narrative_summary": " ".join(
            build_narrative(observation, alerts, rivers, air_quality, traffic, every)
        ),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def collect_city_summary(sources: CivicSources, month: Optional[int] = None) -> Dict[str, Any]:
    """Fetch all five feeds concurrently and summarize whatever came back."""
    observation, alerts, rivers, air_quality, traffic = await asyncio.gather(
        asyncio.to_thread(sources.weather_observation.fetch),
        asyncio.to_thread(sources.weather_alerts.fetch),
        asyncio.to_thread(sources.rivers.fetch),
        asyncio.to_thread(sources.air_quality.fetch),
        asyncio.to_thread(sources.traffic.fetch),
    )
    return build_city_summary(observation, alerts, rivers, air_quality, traffic, month=month)
