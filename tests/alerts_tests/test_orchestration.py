# tests/alerts_tests/test_orchestration.py
import asyncio
import json

import pytest

import civic_alerts.alerts.orchestration as orchestration
from civic_alerts.config import Settings
from civic_alerts.alerts.errors import LedgerError
from civic_alerts.alerts.orchestration import (
    authorize_cron_request,
    create_orchestrator_from_config,
    load_alerts_config,
)
from civic_alerts.alerts.schema import (
    AirQualityReading,
    ReceiptCheckResult,
    RiverReading,
    TrafficIncident,
    WeatherAlert,
)

from fakes import FakeDispatcher, FakeReader

AQI_160 = AirQualityReading(aqi=160, category="Unhealthy", primary_pollutant="PM2.5", timestamp="2025-07-04T15:00:00Z")
TORNADO = WeatherAlert(id="urn:nws:tornado-1", event="Tornado Warning", severity="Severe", headline="Tornado Warning")


def _run(orch, headers=None):
    return asyncio.run(orch.handle(headers or {}))


# ---- authorization ----

def test_authorize_trusted_header(prod_settings):
    assert authorize_cron_request({"X-Cron-Trigger": "1"}, prod_settings) is True
    assert authorize_cron_request({"x-cron-trigger": "0"}, prod_settings) is False


def test_authorize_bearer_secret(prod_settings):
    assert authorize_cron_request({"Authorization": "Bearer s3cret"}, prod_settings) is True
    assert authorize_cron_request({"Authorization": "Bearer nope"}, prod_settings) is False
    assert authorize_cron_request({}, prod_settings) is False


def test_bearer_ignored_without_configured_secret():
    settings = Settings.from_overrides(app_env="production")
    if settings.cron_secret:
        pytest.skip("CRON_SECRET set in environment")
    assert authorize_cron_request({"Authorization": "Bearer "}, settings) is False
    assert authorize_cron_request({"Authorization": "Bearer None"}, settings) is False


def test_development_bypass(dev_settings):
    assert authorize_cron_request({}, dev_settings) is True


def test_unauthorized_request_does_no_work(make_orchestrator, make_sources, prod_settings):
    srcs = make_sources(air_quality=AQI_160)
    status, body = _run(make_orchestrator(srcs, settings=prod_settings))
    assert status == 401
    assert body == {"error": "Unauthorized"}
    assert srcs.air_quality.calls == 0


def test_authorized_via_header_runs(make_orchestrator, make_sources, prod_settings):
    status, body = _run(make_orchestrator(make_sources(), settings=prod_settings), {"x-cron-trigger": "1"})
    assert status == 200
    assert body["success"] is True


# ---- response shape ----

def test_empty_run_shape(make_orchestrator, make_sources):
    status, body = _run(make_orchestrator(make_sources()))
    assert status == 200
    assert set(body) == {"success", "results", "cleanedUp", "timestamp"}
    assert set(body["results"]) == {"weather", "river", "air_quality", "traffic"}
    assert body["results"]["weather"] == {"checked": 0, "matched": 0, "notified": 0}
    assert body["cleanedUp"] == 0
    json.dumps(body)


# ---- scenario A: authenticated path, record after send ----

def test_air_quality_subscriber_notified_once(store, ledger, make_orchestrator, make_sources):
    store.save_subscription("alice", "air_quality", {"minAqi": 101})
    dispatcher = FakeDispatcher()
    orch = make_orchestrator(make_sources(air_quality=AQI_160), dispatcher)

    _, body = _run(orch)
    assert body["results"]["air_quality"] == {"checked": 1, "matched": 1, "notified": 1}
    assert [c[0] for c in dispatcher.user_calls] == ["alice"]
    assert dispatcher.user_calls[0][1].title == "Air Quality Alert: Unhealthy"
    assert ledger.has_been_triggered("alice", "air_quality", AQI_160.source_id) is True

    _, body = _run(orch)
    assert body["results"]["air_quality"] == {"checked": 1, "matched": 1, "notified": 0}
    assert len(dispatcher.user_calls) == 1


def test_failed_send_is_not_recorded_and_retries(store, ledger, make_orchestrator, make_sources):
    store.save_subscription("alice", "air_quality", {"minAqi": 101})
    dispatcher = FakeDispatcher(user_sent={"alice": 0})
    orch = make_orchestrator(make_sources(air_quality=AQI_160), dispatcher)

    _, body = _run(orch)
    assert body["results"]["air_quality"]["notified"] == 0
    assert ledger.has_been_triggered("alice", "air_quality", AQI_160.source_id) is False

    dispatcher.user_sent["alice"] = 2
    _, body = _run(orch)
    assert body["results"]["air_quality"]["notified"] == 1
    assert len(dispatcher.user_calls) == 2


def test_unmatched_subscriber_not_sent(store, make_orchestrator, make_sources):
    store.save_subscription("picky", "air_quality", {"minAqi": 201})
    dispatcher = FakeDispatcher()
    _, body = _run(make_orchestrator(make_sources(air_quality=AQI_160), dispatcher))
    assert body["results"]["air_quality"] == {"checked": 1, "matched": 0, "notified": 0}
    assert dispatcher.user_calls == []


def test_non_anomalous_air_quality_skips_matching(store, make_orchestrator, make_sources, monkeypatch):
    store.save_subscription("alice", "air_quality", {"minAqi": 51})
    monkeypatch.setattr(orchestration, "matches", lambda *a: pytest.fail("matcher called"))
    _, body = _run(make_orchestrator(make_sources(air_quality=AirQualityReading(aqi=80))))
    assert body["results"]["air_quality"] == {"checked": 1, "matched": 0, "notified": 0}


# ---- scenario B: device path, record before send ----

def test_devices_pre_recorded_even_when_send_fails(store, ledger, make_orchestrator, make_sources):
    for i, token in enumerate(["ExponentPushToken[a]", "ExponentPushToken[b]", "bad-token"]):
        store.save_device_subscription(f"dev-{i}", token)
    dispatcher = FakeDispatcher(bad_tokens={"bad-token"})
    orch = make_orchestrator(make_sources(weather=[TORNADO]), dispatcher)

    _, body = _run(orch)
    assert body["results"]["weather"]["notified"] == 2
    assert len(dispatcher.token_calls) == 1
    assert len(dispatcher.token_calls[0][0]) == 3
    assert ledger.count("device") == 3

    _, body = _run(orch)
    assert body["results"]["weather"]["notified"] == 0
    assert len(dispatcher.token_calls) == 1


def test_device_air_quality_uses_fixed_threshold(store, make_orchestrator, make_sources):
    store.save_device_subscription("dev-1", "ExponentPushToken[a]", alert_types=["air_quality"])
    dispatcher = FakeDispatcher()
    _, body = _run(make_orchestrator(make_sources(air_quality=AirQualityReading(aqi=120)), dispatcher))
    assert body["results"]["air_quality"]["notified"] == 1


def test_device_opt_out_respected(store, make_orchestrator, make_sources):
    store.save_device_subscription("dev-1", "ExponentPushToken[a]", alert_types=["traffic"])
    dispatcher = FakeDispatcher()
    _run(make_orchestrator(make_sources(weather=[TORNADO]), dispatcher))
    assert dispatcher.token_calls == []


# ---- scenario C: below-threshold traffic never reaches the matcher ----

def test_moderate_arterial_traffic_never_matched(store, make_orchestrator, make_sources, monkeypatch):
    store.save_subscription("alice", "traffic", {"severities": ["moderate", "major", "critical"]})
    store.save_device_subscription("dev-1", "ExponentPushToken[a]")
    monkeypatch.setattr(orchestration, "matches", lambda *a: pytest.fail("matcher called"))
    incident = TrafficIncident(id="511-1", type="Crash", severity="moderate", road_name="I-29")
    dispatcher = FakeDispatcher()

    _, body = _run(make_orchestrator(make_sources(traffic=[incident]), dispatcher))
    assert body["results"]["traffic"] == {"checked": 1, "matched": 0, "notified": 0}
    assert dispatcher.user_calls == [] and dispatcher.token_calls == []


def test_river_pipeline(store, make_orchestrator, make_sources):
    store.save_subscription("alice", "river", {"stages": ["major"]})
    store.save_subscription("bob", "river", {"stages": ["minor", "moderate", "major"]})
    readings = [
        RiverReading("06486000", "Missouri River at Sioux City", 33.1, "moderate", "2025-04-01T12:00:00Z"),
        RiverReading("06600500", "Floyd River at James", 4.0, "normal", "2025-04-01T12:00:00Z"),
    ]
    dispatcher = FakeDispatcher()
    _, body = _run(make_orchestrator(make_sources(rivers=readings), dispatcher))
    assert body["results"]["river"] == {"checked": 2, "matched": 1, "notified": 1}
    assert dispatcher.user_calls[0][0] == "bob"


# ---- failure isolation ----

def test_source_unavailable_contributes_zero(store, make_orchestrator, make_sources):
    store.save_subscription("alice", "air_quality", {})
    srcs = make_sources(weather=[TORNADO])
    srcs.air_quality = FakeReader(None)
    _, body = _run(make_orchestrator(srcs))
    assert body["results"]["air_quality"] == {"checked": 0, "matched": 0, "notified": 0}


def test_domain_exception_is_isolated(store, make_orchestrator, make_sources):
    store.save_subscription("alice", "air_quality", {})
    srcs = make_sources(air_quality=AQI_160)
    srcs.rivers = FakeReader(RuntimeError("reader exploded"))
    status, body = _run(make_orchestrator(srcs))
    assert status == 200
    assert body["results"]["river"] == {"checked": 0, "matched": 0, "notified": 0}
    assert body["results"]["air_quality"]["notified"] == 1


def test_partial_counts_survive_mid_pipeline_failure(store, make_orchestrator, make_sources):
    store.save_subscription("alice", "air_quality", {})
    store.save_subscription("bob", "air_quality", {})

    class Flaky(FakeDispatcher):
        def send_to_user(self, user_id, payload):
            if user_id == "bob":
                raise RuntimeError("transport crashed")
            return super().send_to_user(user_id, payload)

    _, body = _run(make_orchestrator(make_sources(air_quality=AQI_160), Flaky()))
    assert body["results"]["air_quality"] == {"checked": 1, "matched": 2, "notified": 1}


def test_ledger_check_failure_suppresses_send(store, ledger, make_orchestrator, make_sources, monkeypatch):
    store.save_subscription("alice", "air_quality", {})
    store.save_device_subscription("dev-1", "ExponentPushToken[a]")

    def broken(*a, **kw):
        raise LedgerError("database is locked")
    monkeypatch.setattr(ledger, "has_been_triggered", broken)

    dispatcher = FakeDispatcher()
    _, body = _run(make_orchestrator(make_sources(air_quality=AQI_160), dispatcher))
    assert body["results"]["air_quality"]["notified"] == 0
    assert dispatcher.user_calls == [] and dispatcher.token_calls == []


def test_post_send_record_failure_still_counts(store, ledger, make_orchestrator, make_sources, monkeypatch):
    store.save_subscription("alice", "air_quality", {})

    def broken(*a, **kw):
        raise LedgerError("disk full")
    monkeypatch.setattr(ledger, "record_triggered", broken)

    dispatcher = FakeDispatcher()
    _, body = _run(make_orchestrator(make_sources(air_quality=AQI_160), dispatcher))
    assert body["results"]["air_quality"]["notified"] == 1
    assert len(dispatcher.user_calls) == 1


def test_device_pre_record_failure_skips_token(store, ledger, make_orchestrator, make_sources, monkeypatch):
    store.save_device_subscription("dev-1", "ExponentPushToken[a]")
    store.save_device_subscription("dev-2", "ExponentPushToken[b]")
    original = ledger.record_triggered

    def flaky(identity, *a, **kw):
        if identity == "dev-1":
            raise LedgerError("disk full")
        return original(identity, *a, **kw)
    monkeypatch.setattr(ledger, "record_triggered", flaky)

    dispatcher = FakeDispatcher()
    _run(make_orchestrator(make_sources(weather=[TORNADO]), dispatcher))
    assert dispatcher.token_calls[0][0] == ["ExponentPushToken[b]"]


def test_cleanup_failure_reported_with_200(ledger, make_orchestrator, make_sources, monkeypatch):
    def broken(*a, **kw):
        raise LedgerError("cleanup exploded")
    monkeypatch.setattr(ledger, "cleanup", broken)

    status, body = _run(make_orchestrator(make_sources()))
    assert status == 200
    assert body["success"] is True
    assert "cleanup exploded" in body["error"]
    assert body["cleanedUp"] == 0


def test_cleanup_uses_retention_setting(ledger, make_orchestrator, make_sources, db_path, monkeypatch):
    seen = []
    monkeypatch.setattr(ledger, "cleanup", lambda days: seen.append(days) or 3)
    settings = Settings.from_overrides(app_env="development", db_path=str(db_path), ledger_retention_days=2)
    _, body = _run(make_orchestrator(make_sources(), settings=settings))
    assert seen == [2]
    assert body["cleanedUp"] == 3


def test_unexpected_top_level_failure_returns_500(make_orchestrator, make_sources, monkeypatch):
    orch = make_orchestrator(make_sources())

    async def broken_gather(*aws, **kw):
        for aw in aws:
            aw.close()
        raise RuntimeError("event loop trouble")
    monkeypatch.setattr(orchestration.asyncio, "gather", broken_gather)

    status, body = _run(orch)
    assert status == 500
    assert body["success"] is False
    assert body["error"] == "event loop trouble"
    assert set(body["results"]) == {"weather", "river", "air_quality", "traffic"}


# ---- Expo receipt follow-up ----

class _ReceiptChannel:
    def __init__(self, result=None):
        self.result = result or ReceiptCheckResult()
        self.calls = []

    def check_receipts(self, min_age_minutes=30, limit=1000):
        self.calls.append(min_age_minutes)
        return self.result


def _run_receipts(orch, headers=None):
    return asyncio.run(orch.handle_receipts(headers or {}))


def test_receipt_check_requires_auth(make_orchestrator, make_sources, prod_settings):
    channel = _ReceiptChannel()
    status, body = _run_receipts(make_orchestrator(make_sources(), settings=prod_settings, receipts=channel))
    assert status == 401
    assert body == {"error": "Unauthorized"}
    assert channel.calls == []


def test_receipt_check_shape_and_cleanup(store, make_orchestrator, make_sources, db_path, monkeypatch):
    seen = []
    monkeypatch.setattr(store, "cleanup_expo_receipts", lambda days: seen.append(days) or 4)
    channel = _ReceiptChannel(ReceiptCheckResult(checked=3, ok=2, errors=1, deactivated=1))
    settings = Settings.from_overrides(
        app_env="development", db_path=str(db_path),
        expo_receipt_min_age_minutes=15, expo_receipt_retention_days=3,
    )

    status, body = _run_receipts(make_orchestrator(make_sources(), settings=settings, receipts=channel))

    assert status == 200
    assert body["success"] is True
    assert (body["checked"], body["ok"], body["errors"], body["deactivated"]) == (3, 2, 1, 1)
    assert body["cleanedUp"] == 4
    assert "timestamp" in body
    assert channel.calls == [15]
    assert seen == [3]


def test_receipt_check_without_channel_still_cleans(store, make_orchestrator, make_sources):
    status, body = _run_receipts(make_orchestrator(make_sources()))
    assert status == 200
    assert body["checked"] == 0
    assert body["cleanedUp"] == 0


def test_receipt_store_failure_returns_500(store, make_orchestrator, make_sources, monkeypatch):
    def broken(*a, **kw):
        raise RuntimeError("database is locked")
    monkeypatch.setattr(store, "cleanup_expo_receipts", broken)

    status, body = _run_receipts(make_orchestrator(make_sources(), receipts=_ReceiptChannel()))
    assert status == 500
    assert body["success"] is False
    assert body["error"] == "database is locked"


# ---- config file wiring ----

def test_create_orchestrator_from_yaml(tmp_path):
    cfg = tmp_path / "alerts.yaml"
    cfg.write_text(
        "alerts:\n"
        f"  db_path: {tmp_path / 'state.db'}\n"
        "  source_base_url: https://siouxland.example\n"
        "  ledger_retention_days: 3\n"
        "  unknown_key: ignored\n"
    )
    orch = create_orchestrator_from_config(str(cfg))
    assert orch.settings.ledger_retention_days == 3
    assert orch.sources.air_quality.url == "https://siouxland.example/api/air-quality"
    assert orch.receipts is orch.dispatcher.expo_push
    assert orch.receipts.receipts_url == "https://exp.host/--/api/v2/push/getReceipts"
    assert (tmp_path / "state.db").exists()


def test_load_alerts_config_json_and_unsupported(tmp_path):
    cfg = tmp_path / "alerts.json"
    cfg.write_text(json.dumps({"alerts": {"app_env": "development"}}))
    assert load_alerts_config(str(cfg)) == {"app_env": "development"}

    with pytest.raises(ValueError):
        load_alerts_config(str(tmp_path / "alerts.toml"))
