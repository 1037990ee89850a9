# tests/alerts_tests/test_classifier.py
import pytest

from civic_alerts.alerts.classifier import (
    SEASONAL_TEMPS,
    classify_air_quality,
    classify_reading,
    classify_river_reading,
    classify_rivers,
    classify_traffic,
    classify_traffic_incident,
    classify_weather,
    classify_weather_alert,
    classify_weather_observation,
    overall_status,
)
from civic_alerts.alerts.schema import (
    AirQualityReading,
    Anomaly,
    RiverReading,
    TrafficIncident,
    WeatherAlert,
    WeatherObservation,
)


def _alert(severity="Severe", event="Tornado Warning", headline="Tornado Warning until 5 PM"):
    return WeatherAlert(id="urn:nws:1", event=event, severity=severity, headline=headline)


# ---- weather observation ----

def test_temperature_within_band_is_quiet():
    # July band is 65-90
    assert classify_weather_observation(WeatherObservation(temperature=80), month=7) == []


def test_temperature_far_below_band_needs_attention():
    out = classify_weather_observation(WeatherObservation(temperature=-5), month=1)
    assert len(out) == 1
    assert out[0].severity == "attention"
    assert "below normal" in out[0].message


def test_temperature_far_above_band_needs_attention():
    out = classify_weather_observation(WeatherObservation(temperature=105), month=7)
    assert [a.severity for a in out] == ["attention"]
    assert "above normal" in out[0].message


def test_margin_is_exclusive():
    low, high = SEASONAL_TEMPS[4]
    assert classify_weather_observation(WeatherObservation(temperature=low - 10), month=4) == []
    assert classify_weather_observation(WeatherObservation(temperature=high + 10), month=4) == []


@pytest.mark.parametrize("month", range(1, 13))
def test_temperature_severity_is_monotonic(month):
    low, high = SEASONAL_TEMPS[month]
    flagged_below = False
    flagged_above = False
    for delta in range(0, 60):
        below = classify_weather_observation(WeatherObservation(temperature=low - delta), month=month)
        above = classify_weather_observation(WeatherObservation(temperature=high + delta), month=month)
        if flagged_below:
            assert below, f"{low - delta}°F lost its anomaly in month {month}"
        if flagged_above:
            assert above, f"{high + delta}°F lost its anomaly in month {month}"
        flagged_below = flagged_below or bool(below)
        flagged_above = flagged_above or bool(above)
    assert flagged_below and flagged_above


@pytest.mark.parametrize("speed,expected", [
    (20, []),
    (25, []),
    (30, ["attention"]),
    (40, ["attention"]),
    (45, ["alert"]),
])
def test_wind_thresholds(speed, expected):
    out = classify_weather_observation(WeatherObservation(temperature=75, wind_speed=speed), month=7)
    assert [a.severity for a in out] == expected


def test_wind_message_includes_gust():
    out = classify_weather_observation(WeatherObservation(wind_speed=30, wind_gust=48), month=7)
    assert out[0].message == "High winds at 30 mph with gusts to 48 mph"


def test_missing_observation_is_empty():
    assert classify_weather_observation(None) == []
    assert classify_weather(None, None) == []


# ---- weather alerts ----

@pytest.mark.parametrize("severity,expected", [
    ("Extreme", "alert"),
    ("Severe", "alert"),
    ("Moderate", "attention"),
    ("Minor", "attention"),
    ("Unknown", "attention"),
])
def test_weather_alert_severity(severity, expected):
    assert classify_weather_alert(_alert(severity=severity)).severity == expected


def test_weather_alert_message_falls_back_to_event():
    assert classify_weather_alert(_alert(headline="")).message == "Tornado Warning"


def test_classify_weather_combines_observation_and_alerts():
    out = classify_weather(WeatherObservation(temperature=75, wind_speed=50), [_alert()], month=7)
    assert [a.severity for a in out] == ["alert", "alert"]


# ---- rivers ----

@pytest.mark.parametrize("stage,expected", [
    ("major", "alert"),
    ("moderate", "alert"),
    ("minor", "attention"),
    ("action", "attention"),
])
def test_river_stage_severity(stage, expected):
    r = RiverReading("06486000", "Missouri River at Sioux City", 30.2, stage, "2025-04-01T12:00:00Z")
    a = classify_river_reading(r)
    assert a.severity == expected
    assert a.message.startswith("Missouri River at Sioux City")
    assert "(30.2ft)" in a.message


def test_normal_river_is_quiet():
    r = RiverReading("06486000", "Missouri River", 20.0, "normal")
    assert classify_river_reading(r) is None
    assert classify_rivers([r]) == []
    assert classify_rivers(None) == []


# ---- air quality ----

@pytest.mark.parametrize("aqi,expected", [
    (42, None),
    (100, None),
    (101, "attention"),
    (150, "attention"),
    (151, "alert"),
    (300, "alert"),
])
def test_air_quality_thresholds(aqi, expected):
    out = classify_air_quality(AirQualityReading(aqi=aqi))
    assert (out.severity if out else None) == expected


def test_missing_air_quality():
    assert classify_air_quality(None) is None


# ---- traffic ----

def _incident(severity, road):
    return TrafficIncident(id="t1", type="Crash", severity=severity, description="Crash", road_name=road)


def test_moderate_arterial_incident_is_not_anomalous():
    assert classify_traffic_incident(_incident("moderate", "I-29")) is None


def test_major_incident_off_arterial_is_not_anomalous():
    assert classify_traffic_incident(_incident("major", "Gordon Dr")) is None


@pytest.mark.parametrize("severity,road,expected", [
    ("major", "I-29 NB", "attention"),
    ("critical", "US-20 EB", "alert"),
    ("critical", "I-129", "alert"),
])
def test_major_arterial_incidents(severity, road, expected):
    a = classify_traffic_incident(_incident(severity, road))
    assert a.severity == expected
    assert a.message == f"Crash on {road}"


def test_classify_traffic_filters():
    incidents = [_incident("major", "I-29"), _incident("minor", "I-29"), _incident("critical", "Pierce St")]
    assert len(classify_traffic(incidents)) == 1
    assert classify_traffic(None) == []


# ---- dispatch + reduction ----

def test_classify_reading_dispatches_by_type():
    assert classify_reading(_alert()).domain == "weather"
    assert classify_reading(AirQualityReading(aqi=180)).domain == "air_quality"
    assert classify_reading(_incident("moderate", "I-29")) is None
    assert classify_reading(object()) is None


@pytest.mark.parametrize("severities,expected", [
    (["attention"], "attention"),
    (["alert", "info"], "alert"),
    (["info"], "normal"),
    ([], "normal"),
    (["attention", "alert", "attention"], "alert"),
])
def test_overall_status(severities, expected):
    assert overall_status([Anomaly("weather", s, "x") for s in severities]) == expected
