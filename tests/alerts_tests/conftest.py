# tests/alerts_tests/conftest.py
import pytest

from civic_alerts.config import Settings
from civic_alerts.alerts.ledger import TriggeredAlertLedger
from civic_alerts.alerts.orchestration import AlertCronOrchestrator
from civic_alerts.alerts.sources import CivicSources
from civic_alerts.alerts.store import SubscriptionStore

from fakes import FakeDispatcher, FakeReader


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "alerts.db"


@pytest.fixture
def store(db_path):
    return SubscriptionStore(db_path)


@pytest.fixture
def ledger(db_path):
    return TriggeredAlertLedger(db_path)


@pytest.fixture
def dev_settings(db_path):
    return Settings.from_overrides(app_env="development", db_path=str(db_path), cron_secret="s3cret")


@pytest.fixture
def prod_settings(db_path):
    return Settings.from_overrides(app_env="production", db_path=str(db_path), cron_secret="s3cret")


@pytest.fixture
def make_sources():
    def make(weather=None, rivers=None, air_quality=None, traffic=None, observation=None):
        return CivicSources(
            weather_alerts=FakeReader(weather if weather is not None else []),
            weather_observation=FakeReader(observation),
            rivers=FakeReader(rivers if rivers is not None else []),
            air_quality=FakeReader(air_quality),
            traffic=FakeReader(traffic if traffic is not None else []),
        )
    return make


@pytest.fixture
def make_orchestrator(store, ledger, dev_settings):
    def make(sources, dispatcher=None, settings=None, receipts=None):
        return AlertCronOrchestrator(
            store=store,
            ledger=ledger,
            dispatcher=dispatcher or FakeDispatcher(),
            sources=sources,
            settings=settings or dev_settings,
            receipts=receipts,
        )
    return make
