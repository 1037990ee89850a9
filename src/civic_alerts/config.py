# src/civic_alerts/config.py
from dataclasses import dataclass, asdict
import os
from typing import Optional, Dict, Any

try:
    # optional; if present we load a .env automatically
    from dotenv import load_dotenv  # pip install python-dotenv
    load_dotenv(override=False)
except Exception:
    pass

DEFAULT_SOURCE_BASE_URL = "http://localhost:3000"

@dataclass(frozen=True)
class Settings:
    # -------- General ----------
    app_name: str         = os.getenv("APP_NAME", "Civic Alerts")
    app_version: str      = os.getenv("APP_VERSION", "0.1.0")
    app_env: str          = os.getenv("APP_ENV", "production")
    log_level: str        = os.getenv("LOG_LEVEL", "INFO")

    # -------- Cron auth --------
    cron_secret: Optional[str]     = os.getenv("CRON_SECRET") or None
    cron_trusted_header: str       = os.getenv("CRON_TRUSTED_HEADER", "x-cron-trigger")
    cron_trusted_header_value: str = os.getenv("CRON_TRUSTED_HEADER_VALUE", "1")

    # -------- Storage ----------
    db_path: str               = os.getenv("ALERTS_DB_PATH", "data/state/alerts.db")
    ledger_retention_days: int = int(os.getenv("LEDGER_RETENTION_DAYS", "7"))

    # -------- Sources ----------
    source_base_url: str       = os.getenv("SOURCE_BASE_URL", DEFAULT_SOURCE_BASE_URL)
    weather_alerts_path: str   = os.getenv("WEATHER_ALERTS_PATH", "/api/weather/alerts")
    weather_current_path: str  = os.getenv("WEATHER_CURRENT_PATH", "/api/weather")
    rivers_path: str           = os.getenv("RIVERS_PATH", "/api/rivers")
    air_quality_path: str      = os.getenv("AIR_QUALITY_PATH", "/api/air-quality")
    traffic_path: str          = os.getenv("TRAFFIC_PATH", "/api/traffic-events")
    http_timeout_seconds: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

    # -------- Push transports --
    vapid_public_key: str      = os.getenv("VAPID_PUBLIC_KEY", "")
    vapid_private_key: str     = os.getenv("VAPID_PRIVATE_KEY", "")
    vapid_subject: str         = os.getenv("VAPID_SUBJECT", "mailto:alerts@siouxland.online")
    web_push_ttl: int          = int(os.getenv("WEB_PUSH_TTL", "86400"))
    expo_push_url: str         = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
    expo_access_token: str     = os.getenv("EXPO_ACCESS_TOKEN", "")
    expo_receipts_url: str     = os.getenv("EXPO_RECEIPTS_URL", "https://exp.host/--/api/v2/push/getReceipts")
    expo_receipt_min_age_minutes: int = int(os.getenv("EXPO_RECEIPT_MIN_AGE_MINUTES", "30"))
    expo_receipt_retention_days: int  = int(os.getenv("EXPO_RECEIPT_RETENTION_DAYS", "7"))

    @property
    def is_development(self) -> bool:
        return self.app_env.strip().lower() in {"development", "dev", "local"}

    def source_url(self, path: str) -> str:
        return self.source_base_url.rstrip("/") + "/" + path.lstrip("/")

    # helper: convert to dict (useful for logging)
    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        # never log secrets
        for k in ("cron_secret", "vapid_private_key", "expo_access_token"):
            if d.get(k):
                d[k] = "***"
        return d

    @staticmethod
    def from_overrides(**kwargs) -> "Settings":
        """
        Build Settings and apply runtime overrides (e.g., parsed CLI flags or a
        YAML `alerts:` block). Only keys that match fields will be overridden.
        """
        current = asdict(Settings())
        current.update({k: v for k, v in kwargs.items() if k in current and v is not None})
        # rebuild frozen dataclass with updates
        return Settings(**current)  # type: ignore[arg-type]
