# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/payloads.py
"""
Canonical notification title/body/url/tag per domain and reading.

The tag lets the browser collapse repeated notifications for the same
subject; the url deep-links to the matching dashboard widget.
"""
from __future__ import annotations

from .schema import (
    AirQualityReading,
    PushPayload,
    Reading,
    RiverReading,
    TrafficIncident,
    WeatherAlert,
)

STAGE_LABELS = {
    "action": "Action Stage",
    "minor": "Minor Flooding",
    "moderate": "Moderate Flooding",
    "major": "Major Flooding",
}


def _weather_payload(alert: WeatherAlert) -> PushPayload:
    return PushPayload(
        title=f"Weather Alert: {alert.event}",
        body=alert.headline or alert.event,
        tag=f"weather-{alert.id}",
        url="/?widget=weather-alerts",
    )


def _river_payload(reading: RiverReading) -> PushPayload:
    stage = STAGE_LABELS.get(reading.flood_stage, reading.flood_stage)
    height = f"{reading.gauge_height:.1f} ft" if reading.gauge_height is not None else "unknown height"
    return PushPayload(
        title=f"River Alert: {stage}",
        body=f"{reading.site_name} at {height}",
        tag=f"river-{reading.site_id}",
        url="/?widget=river-gauge",
    )


def _air_quality_payload(reading: AirQualityReading) -> PushPayload:
    return PushPayload(
        title=f"Air Quality Alert: {reading.category}",
        body=f"AQI is {reading.aqi} ({reading.primary_pollutant})",
        tag="air-quality",
        url="/?widget=air-quality",
    )


def _traffic_payload(incident: TrafficIncident) -> PushPayload:
    return PushPayload(
        title=f"Traffic Alert: {incident.type}",
        body=f"{incident.description} on {incident.road_name}",
        tag=f"traffic-{incident.id}",
        url="/?widget=traffic",
    )


def build_notification_payload(reading: Reading) -> PushPayload:
    if isinstance(reading, WeatherAlert):
        return _weather_payload(reading)
    if isinstance(reading, RiverReading):
        return _river_payload(reading)
    if isinstance(reading, AirQualityReading):
        return _air_quality_payload(reading)
    if isinstance(reading, TrafficIncident):
        return _traffic_payload(reading)
    return PushPayload(title="Siouxland Alert", body="You have a new notification", tag="default", url="/")
