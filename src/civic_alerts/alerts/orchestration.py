# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/orchestration.py
"""
Cron orchestration - fetch, classify, match, dedup and deliver for all domains.
"""
from __future__ import annotations
import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..config import Settings
from .classifier import classify_reading
from .delivery import AlertDispatcher, ExpoPushChannel, WebPushChannel
from .errors import AuthorizationError, LedgerError
from .ledger import TriggeredAlertLedger
from .matcher import device_eligible, matches
from .payloads import build_notification_payload
from .schema import ALERT_TYPES, IDENTITY_DEVICE, DomainResult, Reading, ReceiptCheckResult
from .sources import CivicSources
from .store import SubscriptionStore

logger = logging.getLogger(__name__)


def _lower_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


def authorize_cron_request(headers: Optional[Mapping[str, str]], settings: Settings) -> bool:
    """
    Accept the scheduler's trusted header, a bearer token equal to the
    configured CRON_SECRET, or any caller in development.
    """
    h = _lower_headers(headers)
    if h.get(settings.cron_trusted_header.lower()) == settings.cron_trusted_header_value:
        return True
    if settings.cron_secret and h.get("authorization") == f"Bearer {settings.cron_secret}":
        return True
    return settings.is_development


def require_cron_authorization(headers: Optional[Mapping[str, str]], settings: Settings):
    if not authorize_cron_request(headers, settings):
        raise AuthorizationError("Cron trigger is not authorized")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class AlertCronOrchestrator:
    """
    One scheduled alert check across weather, river, air quality and traffic.

    Per domain the pipeline is:
    1. Fetch readings (an unavailable source contributes zero counts)
    2. Keep only readings the classifier flags as anomalous
    3. Authenticated subscribers: match → ledger check → send → record if sent
    4. Anonymous devices: ledger check → record → collect token, then one batch send

    Domains run concurrently in worker threads; each has its own failure
    boundary and keeps whatever counts it reached before failing.

    A second, independent job (``handle_receipts``) follows up on Expo
    tickets from earlier sends.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        ledger: TriggeredAlertLedger,
        dispatcher: AlertDispatcher,
        sources: CivicSources,
        settings: Optional[Settings] = None,
        receipts: Optional[ExpoPushChannel] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.sources = sources
        self.settings = settings or Settings()
        self.receipts = receipts

    # ------------------------------------------------------------------
    # One domain
    # ------------------------------------------------------------------

    @staticmethod
    def _as_list(readings: Any) -> List[Reading]:
        if readings is None:
            return []
        if isinstance(readings, (list, tuple)):
            return list(readings)
        return [readings]

    def check_domain(self, alert_type: str, result: Optional[DomainResult] = None) -> DomainResult:
        """
        Run one domain's pipeline, updating ``result`` in place.

        Exceptions other than per-candidate ledger failures propagate to the
        caller; the counts reached so far are already in ``result``.
        """
        result = result if result is not None else DomainResult()

        fetched = self.sources.reader_for(alert_type).fetch()
        if fetched is None:
            logger.warning(f"[{alert_type}] Source unavailable, skipping")
            return result

        readings = self._as_list(fetched)
        result.checked = len(readings)
        anomalous = [r for r in readings if classify_reading(r) is not None]
        if not anomalous:
            logger.info(f"[{alert_type}] {len(readings)} readings checked, nothing anomalous")
            return result

        subscriptions = self.store.get_enabled_subscriptions(alert_type)
        devices = self.store.get_device_subscriptions(alert_type)
        logger.info(
            f"[{alert_type}] {len(anomalous)}/{len(readings)} anomalous; "
            f"{len(subscriptions)} subscribers, {len(devices)} devices"
        )

        for reading in anomalous:
            source_id = reading.source_id
            payload = build_notification_payload(reading)
            snapshot = payload.to_web_push()

            for sub in subscriptions:
                if not matches(reading, sub.config):
                    continue
                result.matched += 1
                try:
                    if self.ledger.has_been_triggered(sub.subscriber_id, alert_type, source_id):
                        continue
                except LedgerError as e:
                    logger.error(f"[{alert_type}] Ledger check failed, skipping {sub.subscriber_id}: {e}")
                    continue

                delivery = self.dispatcher.send_to_user(sub.subscriber_id, payload)
                if delivery.sent > 0:
                    result.notified += 1
                    try:
                        self.ledger.record_triggered(sub.subscriber_id, alert_type, source_id, snapshot)
                    except LedgerError as e:
                        logger.error(f"[{alert_type}] Sent to {sub.subscriber_id} but failed to record: {e}")

            if not devices or not device_eligible(reading):
                continue

            pending_tokens = []
            for device in devices:
                try:
                    if self.ledger.has_been_triggered(
                        device.device_id, alert_type, source_id, kind=IDENTITY_DEVICE
                    ):
                        continue
                    # recorded before the send so an overlapping run skips this token
                    self.ledger.record_triggered(
                        device.device_id, alert_type, source_id, snapshot, kind=IDENTITY_DEVICE
                    )
                except LedgerError as e:
                    logger.error(f"[{alert_type}] Ledger failure for device {device.device_id}: {e}")
                    continue
                pending_tokens.append(device.push_token)

            if pending_tokens:
                delivery = self.dispatcher.send_to_tokens(pending_tokens, payload)
                result.notified += delivery.sent

        logger.info(
            f"[{alert_type}] checked={result.checked} matched={result.matched} notified={result.notified}"
        )
        return result

    def _check_domain_safely(self, alert_type: str, result: DomainResult) -> DomainResult:
        try:
            self.check_domain(alert_type, result)
        except Exception as e:
            logger.error(f"[{alert_type}] Alert check failed: {e}", exc_info=True)
        return result

    # ------------------------------------------------------------------
    # Whole run
    # ------------------------------------------------------------------

    async def run(self) -> Tuple[int, Dict[str, Any]]:
        """
        Check all domains concurrently, then clean the ledger once.

        Returns:
            (status_code, body) where body is the JSON response
        """
        results = {alert_type: DomainResult() for alert_type in ALERT_TYPES}

        try:
            await asyncio.gather(*(
                asyncio.to_thread(self._check_domain_safely, alert_type, results[alert_type])
                for alert_type in ALERT_TYPES
            ))

            body: Dict[str, Any] = {"success": True}
            cleaned_up = 0
            try:
                cleaned_up = await asyncio.to_thread(
                    self.ledger.cleanup, self.settings.ledger_retention_days
                )
            except Exception as e:
                logger.error(f"Ledger cleanup failed: {e}", exc_info=True)
                body["error"] = f"Ledger cleanup failed: {e}"

            body["results"] = {k: v.to_dict() for k, v in results.items()}
            body["cleanedUp"] = cleaned_up
            body["timestamp"] = _timestamp()

            total = sum(r.notified for r in results.values())
            logger.info(f"Alert check complete: {total} notifications sent, {cleaned_up} ledger rows cleaned")
            return 200, body
        except Exception as e:
            logger.error(f"Alert check run failed: {e}", exc_info=True)
            return 500, {
                "success": False,
                "error": str(e),
                "results": {k: v.to_dict() for k, v in results.items()},
                "timestamp": _timestamp(),
            }

    async def handle(self, headers: Optional[Mapping[str, str]]) -> Tuple[int, Dict[str, Any]]:
        """Authorize the trigger, then run."""
        try:
            require_cron_authorization(headers, self.settings)
        except AuthorizationError:
            logger.warning("Rejected unauthorized cron trigger")
            return 401, {"error": "Unauthorized"}
        return await self.run()

    # ------------------------------------------------------------------
    # Expo receipt follow-up
    # ------------------------------------------------------------------

    def _check_receipts(self) -> Dict[str, Any]:
        counts = ReceiptCheckResult()
        if self.receipts is not None:
            counts = self.receipts.check_receipts(self.settings.expo_receipt_min_age_minutes)
        cleaned_up = self.store.cleanup_expo_receipts(self.settings.expo_receipt_retention_days)
        return {"success": True, **counts.to_dict(), "cleanedUp": cleaned_up}

    async def run_receipt_check(self) -> Tuple[int, Dict[str, Any]]:
        """
        Check pending Expo receipts, then drop old receipt rows.

        Returns:
            (status_code, body); 500 when the receipt store fails
        """
        try:
            body = await asyncio.to_thread(self._check_receipts)
        except Exception as e:
            logger.error(f"Expo receipt check failed: {e}", exc_info=True)
            return 500, {"success": False, "error": str(e), "timestamp": _timestamp()}
        body["timestamp"] = _timestamp()
        return 200, body

    async def handle_receipts(self, headers: Optional[Mapping[str, str]]) -> Tuple[int, Dict[str, Any]]:
        """Authorize the trigger, then check receipts."""
        try:
            require_cron_authorization(headers, self.settings)
        except AuthorizationError:
            logger.warning("Rejected unauthorized receipt-check trigger")
            return 401, {"error": "Unauthorized"}
        return await self.run_receipt_check()


def build_orchestrator(settings: Optional[Settings] = None) -> AlertCronOrchestrator:
    """Wire the production store, ledger, push channels and HTTP readers."""
    settings = settings or Settings()
    store = SubscriptionStore(settings.db_path)
    ledger = TriggeredAlertLedger(settings.db_path)
    expo_push = ExpoPushChannel(
        push_url=settings.expo_push_url,
        access_token=settings.expo_access_token,
        timeout=settings.http_timeout_seconds,
        store=store,
        receipts_url=settings.expo_receipts_url,
    )
    dispatcher = AlertDispatcher(
        store,
        web_push=WebPushChannel(
            vapid_private_key=settings.vapid_private_key,
            vapid_subject=settings.vapid_subject,
            ttl=settings.web_push_ttl,
            timeout=settings.http_timeout_seconds,
            store=store,
        ),
        expo_push=expo_push,
    )
    return AlertCronOrchestrator(
        store=store,
        ledger=ledger,
        dispatcher=dispatcher,
        sources=CivicSources.from_settings(settings),
        settings=settings,
        receipts=expo_push,
    )


def load_alerts_config(config_path: str) -> Dict[str, Any]:
    """
    Read the ``alerts:`` block of a YAML/JSON config file.

    Raises:
        ValueError: unsupported file extension
    """
    import yaml

    config_file = Path(config_path)

    if config_file.suffix in (".yaml", ".yml"):
        with open(config_file) as f:
            config = yaml.safe_load(f) or {}
    elif config_file.suffix == ".json":
        with open(config_file) as f:
            config = json.load(f)
    else:
        raise ValueError(f"Unsupported config format: {config_file.suffix}")

    return config.get("alerts", {}) or {}


def create_orchestrator_from_config(config_path: str, **overrides) -> AlertCronOrchestrator:
    """
    Create an AlertCronOrchestrator from a YAML/JSON config file.

    Keys of the ``alerts:`` block override the matching Settings fields;
    keyword ``overrides`` win over the file.
    """
    values = load_alerts_config(config_path)
    values.update({k: v for k, v in overrides.items() if v is not None})
    return build_orchestrator(Settings.from_overrides(**values))
