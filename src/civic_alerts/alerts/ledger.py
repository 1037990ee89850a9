# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/ledger.py
"""
Triggered-alert ledger: the persisted at-most-once guard for delivery.

One row per (identity_kind, identity, alert_type, source_id). The cron
pipeline checks the ledger before a candidate becomes delivery-eligible and
writes to it around the send:

- anonymous devices are recorded BEFORE the batch send, so an overlapping run
  cannot push the same alert to the same token twice;
- authenticated users are recorded AFTER a send that reached at least one
  endpoint, so a transient push failure is retried on the next run.

Rows older than the retention window are removed by ``cleanup`` once per
cron invocation. The window must outlive any alert that can stay active
across runs, otherwise a still-active alert would be announced again.
"""
from __future__ import annotations
import sqlite3
import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union
from datetime import datetime, timedelta, timezone

from .errors import LedgerError
from .schema import IDENTITY_DEVICE, IDENTITY_USER, TriggeredAlertRecord

logger = logging.getLogger(__name__)

IDENTITY_KINDS = (IDENTITY_USER, IDENTITY_DEVICE)


class TriggeredAlertLedger:
    """
    SQLite-backed ledger of delivered alerts.

    Every method opens its own short-lived connection so the ledger can be
    shared by pipelines running in worker threads. Failures are raised as
    LedgerError; the caller decides whether to suppress or retry.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """
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
        try:
            with self._connect() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS triggered_alerts (
                        identity_kind   TEXT    NOT NULL,
                        identity        TEXT    NOT NULL,
                        alert_type      TEXT    NOT NULL,
                        source_id       TEXT    NOT NULL,
                        triggered_at    TEXT    NOT NULL,
                        payload_json    TEXT,
                        PRIMARY KEY (identity_kind, identity, alert_type, source_id)
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_triggered_at ON triggered_alerts(triggered_at)"
                )
        except sqlite3.Error as e:
            raise LedgerError(f"Failed to initialize ledger at {self.db_path}: {e}") from e

    @staticmethod
    def _check_kind(kind: str):
        if kind not in IDENTITY_KINDS:
            raise ValueError(f"Unknown identity kind: {kind!r}")

    def has_been_triggered(
        self,
        identity: str,
        alert_type: str,
        source_id: str,
        kind: str = IDENTITY_USER,
    ) -> bool:
        """
        Whether (identity, alert_type, source_id) was already delivered.

        Raises:
            LedgerError: the lookup failed; the candidate must not be sent
        """
        self._check_kind(kind)
        try:
            with self._connect() as conn:
                cur = conn.execute("""
                    SELECT 1 FROM triggered_alerts
                    WHERE identity_kind = ? AND identity = ? AND alert_type = ? AND source_id = ?
                """, (kind, identity, alert_type, source_id))
                return cur.fetchone() is not None
        except sqlite3.Error as e:
            raise LedgerError(f"Ledger lookup failed for {kind}:{identity} {alert_type}/{source_id}: {e}") from e

    def record_triggered(
        self,
        identity: str,
        alert_type: str,
        source_id: str,
        snapshot: Optional[Dict[str, Any]] = None,
        kind: str = IDENTITY_USER,
    ) -> bool:
        """
        Record a delivery. Idempotent: an existing row is left untouched.

        Returns:
            True if a new row was written, False if it already existed
        """
        self._check_kind(kind)
        try:
            with self._connect() as conn:
                cur = conn.execute("""
                    INSERT OR IGNORE INTO triggered_alerts (
                        identity_kind, identity, alert_type, source_id, triggered_at, payload_json
                    ) VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    kind,
                    identity,
                    alert_type,
                    source_id,
                    datetime.now(timezone.utc).isoformat(),
                    json.dumps(snapshot or {}, default=str),
                ))
                inserted = cur.rowcount > 0
        except sqlite3.Error as e:
            raise LedgerError(f"Ledger write failed for {kind}:{identity} {alert_type}/{source_id}: {e}") from e

        if inserted:
            logger.debug(f"Recorded triggered alert {kind}:{identity} {alert_type}/{source_id}")
        return inserted

    def get_record(
        self,
        identity: str,
        alert_type: str,
        source_id: str,
        kind: str = IDENTITY_USER,
    ) -> Optional[TriggeredAlertRecord]:
        self._check_kind(kind)
        try:
            with self._connect() as conn:
                conn.row_factory = sqlite3.Row
                row = conn.execute("""
                    SELECT * FROM triggered_alerts
                    WHERE identity_kind = ? AND identity = ? AND alert_type = ? AND source_id = ?
                """, (kind, identity, alert_type, source_id)).fetchone()
        except sqlite3.Error as e:
            raise LedgerError(f"Ledger read failed: {e}") from e

        if row is None:
            return None
        return TriggeredAlertRecord(
            identity_kind=row["identity_kind"],
            identity=row["identity"],
            alert_type=row["alert_type"],
            source_id=row["source_id"],
            triggered_at=row["triggered_at"],
            payload_snapshot=json.loads(row["payload_json"] or "{}"),
        )

    def count(self, kind: Optional[str] = None) -> int:
        try:
            with self._connect() as conn:
                if kind is None:
                    return conn.execute("SELECT COUNT(*) FROM triggered_alerts").fetchone()[0]
                return conn.execute(
                    "SELECT COUNT(*) FROM triggered_alerts WHERE identity_kind = ?", (kind,)
                ).fetchone()[0]
        except sqlite3.Error as e:
            raise LedgerError(f"Ledger count failed: {e}") from e

    def cleanup(self, max_age_days: int = 7) -> int:
        """
        Delete rows older than ``max_age_days`` for both identity kinds.

        Returns:
            Number of rows deleted
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM triggered_alerts WHERE triggered_at < ?",
                    (cutoff.isoformat(),),
                )
                deleted = cur.rowcount
        except sqlite3.Error as e:
            raise LedgerError(f"Ledger cleanup failed: {e}") from e

        if deleted:
            logger.info(f"Cleaned up {deleted} triggered alerts older than {max_age_days}d")
        return deleted
