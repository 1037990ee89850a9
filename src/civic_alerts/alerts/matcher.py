# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/matcher.py
"""
Decides whether one reading satisfies one subscriber's configured interest.

Pure predicates, no I/O. Anonymous devices have no config; their fixed rules
live in ``device_eligible``.
"""
from __future__ import annotations

from .classifier import MAJOR_TRAFFIC_SEVERITIES
from .schema import (
    AirQualityAlertConfig,
    AirQualityReading,
    Reading,
    RiverAlertConfig,
    RiverReading,
    SubscriptionConfig,
    TrafficAlertConfig,
    TrafficIncident,
    WeatherAlert,
    WeatherAlertConfig,
)

# Devices cannot configure a threshold; they get "Unhealthy for Sensitive Groups" and worse.
DEVICE_MIN_AQI = 101


def matches_weather_alert(alert: WeatherAlert, config: WeatherAlertConfig) -> bool:
    if alert.severity not in config.severities:
        return False
    return not config.events or alert.event in config.events


def matches_river_reading(reading: RiverReading, config: RiverAlertConfig) -> bool:
    if reading.flood_stage == "normal":
        return False
    if config.site_ids and reading.site_id not in config.site_ids:
        return False
    return reading.flood_stage in config.stages


def matches_air_quality(reading: AirQualityReading, config: AirQualityAlertConfig) -> bool:
    return reading.aqi >= config.min_aqi


def matches_traffic_incident(incident: TrafficIncident, config: TrafficAlertConfig) -> bool:
    return incident.severity in config.severities


def matches(reading: Reading, config: SubscriptionConfig) -> bool:
    """
    Dispatch on the config variant. A reading of a different domain than the
    config never matches.
    """
    if isinstance(config, WeatherAlertConfig):
        return isinstance(reading, WeatherAlert) and matches_weather_alert(reading, config)
    if isinstance(config, RiverAlertConfig):
        return isinstance(reading, RiverReading) and matches_river_reading(reading, config)
    if isinstance(config, AirQualityAlertConfig):
        return isinstance(reading, AirQualityReading) and matches_air_quality(reading, config)
    if isinstance(config, TrafficAlertConfig):
        return isinstance(reading, TrafficIncident) and matches_traffic_incident(reading, config)
    return False


def device_eligible(reading: Reading) -> bool:
    """
    Whether an anomalous reading goes out to anonymous devices.

    Traffic bypasses matching (every major/critical incident), air quality uses
    the fixed DEVICE_MIN_AQI, weather alerts and flood stages always qualify.
    """
    if isinstance(reading, AirQualityReading):
        return matches_air_quality(reading, AirQualityAlertConfig(min_aqi=DEVICE_MIN_AQI))
    if isinstance(reading, TrafficIncident):
        return reading.severity in MAJOR_TRAFFIC_SEVERITIES
    if isinstance(reading, RiverReading):
        return reading.flood_stage != "normal"
    return isinstance(reading, WeatherAlert)
