# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/store.py
"""
Subscription and push-endpoint storage.

The settings UI owns these rows; the cron pipeline only reads them, plus two
hygiene writes driven by the push transports (dropping expired web-push
endpoints, deactivating unregistered mobile tokens). The one table the
pipeline owns is expo_push_receipts, the ticket ids waiting for a receipt
check. The save/add helpers exist for seeding and tests.
"""
from __future__ import annotations
import sqlite3
import json
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Sequence, Tuple, Union
from datetime import datetime, timedelta, timezone

from .schema import (
    AIR_QUALITY,
    ALERT_TYPES,
    RIVER,
    TRAFFIC,
    WEATHER,
    DeviceSubscription,
    Subscription,
    SubscriptionConfig,
    config_to_dict,
    parse_subscription_config,
)

logger = logging.getLogger(__name__)

# device_push_subscriptions has one opt-in column per alert type
DEVICE_NOTIFY_COLUMNS = {
    WEATHER: "notify_weather",
    RIVER: "notify_river",
    AIR_QUALITY: "notify_air_quality",
    TRAFFIC: "notify_traffic",
}


class SubscriptionStore:
    """
    Manages subscriber configuration and push endpoints.

    Uses SQLite for local storage with the following tables:
    - alert_subscriptions: per-user alert type + JSON config
    - push_subscriptions: web-push endpoints per user
    - mobile_push_tokens: mobile push tokens per user
    - device_push_subscriptions: anonymous devices and their opt-ins
    - expo_push_receipts: Expo ticket ids awaiting a receipt check
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """
        Initialize the subscription store.

        Args:
            db_path: Path to SQLite database file (default: data/state/alerts.db)
        """
        self.db_path = Path(db_path) if db_path is not None else Path("data/state/alerts.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=30)

    def _init_db(self):
        """Initialize database schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS alert_subscriptions (
                    user_id         TEXT    NOT NULL,
                    alert_type      TEXT    NOT NULL,
                    config_json     TEXT    NOT NULL,
                    enabled         INTEGER DEFAULT 1,
                    created_at      TEXT    NOT NULL,
                    updated_at      TEXT    NOT NULL,
                    PRIMARY KEY (user_id, alert_type)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS push_subscriptions (
                    endpoint        TEXT    PRIMARY KEY,
                    user_id         TEXT    NOT NULL,
                    p256dh          TEXT    NOT NULL,
                    auth            TEXT    NOT NULL,
                    created_at      TEXT    NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS mobile_push_tokens (
                    push_token      TEXT    PRIMARY KEY,
                    user_id         TEXT    NOT NULL,
                    platform        TEXT,
                    is_active       INTEGER DEFAULT 1,
                    created_at      TEXT    NOT NULL,
                    updated_at      TEXT    NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS device_push_subscriptions (
                    device_id           TEXT    PRIMARY KEY,
                    push_token          TEXT    NOT NULL,
                    platform            TEXT,
                    is_active           INTEGER DEFAULT 1,
                    notify_weather      INTEGER DEFAULT 1,
                    notify_river        INTEGER DEFAULT 1,
                    notify_air_quality  INTEGER DEFAULT 1,
                    notify_traffic      INTEGER DEFAULT 1,
                    created_at          TEXT    NOT NULL,
                    updated_at          TEXT    NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS expo_push_receipts (
                    receipt_id      TEXT    PRIMARY KEY,
                    push_token      TEXT    NOT NULL,
                    status          TEXT    NOT NULL DEFAULT 'pending',
                    error_type      TEXT,
                    error_message   TEXT,
                    created_at      TEXT    NOT NULL,
                    checked_at      TEXT
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_subs_type ON alert_subscriptions(alert_type, enabled)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_push_user ON push_subscriptions(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_mobile_user ON mobile_push_tokens(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_receipts_status ON expo_push_receipts(status, created_at)")

    # ------------------------------------------------------------------
    # Cron read side
    # ------------------------------------------------------------------

    def get_enabled_subscriptions(self, alert_type: str) -> List[Subscription]:
        """
        Enabled subscriptions for one alert type.

        Rows whose config cannot be parsed are skipped with a warning so one
        bad row never hides the others.
        """
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT user_id, config_json FROM alert_subscriptions
                WHERE alert_type = ? AND enabled = 1
                ORDER BY user_id
            """, (alert_type,)).fetchall()

        subscriptions = []
        for user_id, config_json in rows:
            try:
                config = parse_subscription_config(alert_type, json.loads(config_json or "{}"))
            except ValueError as e:
                logger.warning(f"[{alert_type}] Skipping subscription for {user_id}: {e}")
                continue
            subscriptions.append(Subscription(user_id, alert_type, config, True))
        return subscriptions

    def get_device_subscriptions(self, alert_type: str) -> List[DeviceSubscription]:
        """Active anonymous devices that opted into this alert type."""
        column = DEVICE_NOTIFY_COLUMNS.get(alert_type)
        if column is None:
            raise ValueError(f"Unknown alert type: {alert_type!r}")

        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT device_id, push_token FROM device_push_subscriptions
                WHERE is_active = 1 AND {column} = 1
                ORDER BY device_id
            """).fetchall()
        return [DeviceSubscription(device_id, alert_type, token) for device_id, token in rows]

    def get_web_push_endpoints(self, user_id: str) -> List[Dict[str, str]]:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                "SELECT endpoint, p256dh, auth FROM push_subscriptions WHERE user_id = ?",
                (user_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    def get_mobile_push_tokens(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT push_token FROM mobile_push_tokens WHERE user_id = ? AND is_active = 1",
                (user_id,)
            ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Transport hygiene
    # ------------------------------------------------------------------

    def delete_web_push_endpoint(self, endpoint: str):
        with self._connect() as conn:
            conn.execute("DELETE FROM push_subscriptions WHERE endpoint = ?", (endpoint,))
        logger.info(f"Removed expired web-push endpoint {endpoint[:60]}")

    def deactivate_push_token(self, token: str):
        """Deactivate a mobile token everywhere it is registered (user or device)."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute(
                "UPDATE mobile_push_tokens SET is_active = 0, updated_at = ? WHERE push_token = ?",
                (now, token)
            )
            conn.execute(
                "UPDATE device_push_subscriptions SET is_active = 0, updated_at = ? WHERE push_token = ?",
                (now, token)
            )
        logger.info(f"Deactivated unregistered push token {token}")

    # ------------------------------------------------------------------
    # Expo push receipts
    # ------------------------------------------------------------------

    def save_expo_receipts(self, receipts: Sequence[Tuple[str, str]]) -> int:
        """
        Store (receipt_id, push_token) pairs from accepted Expo tickets.

        Returns:
            Number of new rows; ids already stored are ignored
        """
        if not receipts:
            return 0
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            before = conn.total_changes
            conn.executemany("""
                INSERT OR IGNORE INTO expo_push_receipts (receipt_id, push_token, status, created_at)
                VALUES (?, ?, 'pending', ?)
            """, [(receipt_id, token, now) for receipt_id, token in receipts])
            return conn.total_changes - before

    def get_pending_expo_receipts(self, min_age_minutes: int = 30, limit: int = 1000) -> List[Dict[str, str]]:
        """Pending receipts old enough for Expo to have a result, oldest first."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=min_age_minutes)
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute("""
                SELECT receipt_id, push_token FROM expo_push_receipts
                WHERE status = 'pending' AND created_at <= ?
                ORDER BY created_at
                LIMIT ?
            """, (cutoff.isoformat(), limit)).fetchall()
        return [dict(r) for r in rows]

    def update_expo_receipt_status(
        self,
        receipt_id: str,
        status: str,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
    ):
        with self._connect() as conn:
            conn.execute("""
                UPDATE expo_push_receipts
                SET status = ?, error_type = ?, error_message = ?, checked_at = ?
                WHERE receipt_id = ?
            """, (status, error_type, error_message, datetime.now(timezone.utc).isoformat(), receipt_id))

    def cleanup_expo_receipts(self, max_age_days: int = 7) -> int:
        """
        Delete receipt rows older than ``max_age_days``, checked or not.

        Returns:
            Number of rows deleted
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM expo_push_receipts WHERE created_at < ?", (cutoff.isoformat(),))
            deleted = cur.rowcount
        if deleted:
            logger.info(f"Cleaned up {deleted} Expo receipts older than {max_age_days}d")
        return deleted

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def save_subscription(
        self,
        user_id: str,
        alert_type: str,
        config: Union[SubscriptionConfig, Dict[str, Any]],
        enabled: bool = True,
    ):
        """Create or update a user's subscription for one alert type."""
        if alert_type not in ALERT_TYPES:
            raise ValueError(f"Unknown alert type: {alert_type!r}")
        raw = config if isinstance(config, dict) else config_to_dict(config)
        now = datetime.now(timezone.utc).isoformat()

        with self._connect() as conn:
            conn.execute("""
                INSERT INTO alert_subscriptions (
                    user_id, alert_type, config_json, enabled, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, alert_type) DO UPDATE SET
                    config_json = excluded.config_json,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
            """, (user_id, alert_type, json.dumps(raw), int(enabled), now, now))

        logger.info(f"Saved {alert_type} subscription for user {user_id}")

    def add_web_push_endpoint(self, user_id: str, endpoint: str, p256dh: str, auth: str):
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO push_subscriptions (endpoint, user_id, p256dh, auth, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (endpoint, user_id, p256dh, auth, datetime.now(timezone.utc).isoformat()))

    def add_mobile_push_token(self, user_id: str, token: str, platform: str = "unknown"):
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO mobile_push_tokens (
                    push_token, user_id, platform, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, 1, ?, ?)
            """, (token, user_id, platform, now, now))

    def save_device_subscription(
        self,
        device_id: str,
        push_token: str,
        platform: str = "unknown",
        alert_types: Optional[List[str]] = None,
    ):
        """Upsert an anonymous device; ``alert_types`` defaults to all four."""
        wanted = set(ALERT_TYPES if alert_types is None else alert_types)
        now = datetime.now(timezone.utc).isoformat()

        with self._connect() as conn:
            conn.execute("""
                INSERT INTO device_push_subscriptions (
                    device_id, push_token, platform, is_active,
                    notify_weather, notify_river, notify_air_quality, notify_traffic,
                    created_at, updated_at
                ) VALUES (?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_id) DO UPDATE SET
                    push_token = excluded.push_token,
                    platform = excluded.platform,
                    is_active = 1,
                    notify_weather = excluded.notify_weather,
                    notify_river = excluded.notify_river,
                    notify_air_quality = excluded.notify_air_quality,
                    notify_traffic = excluded.notify_traffic,
                    updated_at = excluded.updated_at
            """, (
                device_id, push_token, platform,
                int(WEATHER in wanted), int(RIVER in wanted),
                int(AIR_QUALITY in wanted), int(TRAFFIC in wanted),
                now, now,
            ))
