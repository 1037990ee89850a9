# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/delivery.py
"""
Push delivery across web-push endpoints and mobile (Expo) push tokens.
"""
from __future__ import annotations
import json
import re
import logging
from typing import Dict, Any, List, Optional, Sequence

import requests
from pywebpush import webpush, WebPushException

from .schema import DeliveryResult, PushPayload, ReceiptCheckResult
from .store import SubscriptionStore

logger = logging.getLogger(__name__)

EXPO_CHUNK_SIZE = 100
EXPO_RECEIPT_CHUNK_SIZE = 300

_EXPO_TOKEN_RE = re.compile(
    r"^(?:ExponentPushToken\[.+\]|ExpoPushToken\[.+\]"
    r"|[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12})$",
    re.IGNORECASE,
)


def is_valid_expo_push_token(token: str) -> bool:
    return bool(token) and bool(_EXPO_TOKEN_RE.match(token))


class WebPushChannel:
    """
    Sends one notification per web-push endpoint using VAPID.

    An endpoint answering 404/410 is gone for good; it is reported in
    ``DeliveryResult.expired`` and deleted from the store. Each call to
    ``webpush`` gets its own claims dict, which pywebpush fills in with
    ``exp`` and ``aud``.
    """

    def __init__(
        self,
        vapid_private_key: str = "",
        vapid_subject: str = "",
        ttl: int = 86400,
        timeout: float = 10,
        store: Optional[SubscriptionStore] = None,
    ):
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.ttl = ttl
        self.timeout = timeout
        self.store = store

    @property
    def configured(self) -> bool:
        return bool(self.vapid_private_key and self.vapid_subject)

    def send(self, endpoints: Sequence[Dict[str, str]], payload: PushPayload) -> DeliveryResult:
        result = DeliveryResult()
        if not endpoints:
            return result
        if not self.configured:
            logger.warning("VAPID keys not configured, skipping web-push delivery")
            result.failed = len(endpoints)
            return result

        data = json.dumps(payload.to_web_push())
        for sub in endpoints:
            endpoint = sub.get("endpoint", "")
            try:
                webpush(
                    subscription_info={
                        "endpoint": endpoint,
                        "keys": {"p256dh": sub.get("p256dh", ""), "auth": sub.get("auth", "")},
                    },
                    data=data,
                    vapid_private_key=self.vapid_private_key,
                    vapid_claims={"sub": self.vapid_subject},
                    ttl=self.ttl,
                    timeout=self.timeout,
                    headers={"Urgency": "high"},
                )
                result.sent += 1
            except WebPushException as e:
                result.failed += 1
                status = getattr(e.response, "status_code", None)
                if status in (404, 410):
                    result.expired.append(endpoint)
                else:
                    logger.error(f"Web push failed for {endpoint[:60]} (status={status}): {e}")
            except Exception as e:
                result.failed += 1
                logger.error(f"Web push failed for {endpoint[:60]}: {e}", exc_info=True)

        if result.expired and self.store is not None:
            for endpoint in result.expired:
                try:
                    self.store.delete_web_push_endpoint(endpoint)
                except Exception as e:
                    logger.error(f"Failed to delete expired endpoint: {e}")

        return result


class ExpoPushChannel:
    """
    Sends mobile push notifications through the Expo push API.

    Messages go out in chunks of EXPO_CHUNK_SIZE; each ticket in the response
    is matched back to its token by position. A chunk whose request fails
    counts all of its messages as failed without affecting other chunks.

    An ``ok`` ticket only means Expo accepted the message. Its id is stored
    with the token so ``check_receipts`` can later learn whether the device
    actually received it.
    """

    def __init__(
        self,
        push_url: str = "https://exp.host/--/api/v2/push/send",
        access_token: str = "",
        timeout: float = 10,
        store: Optional[SubscriptionStore] = None,
        receipts_url: str = "https://exp.host/--/api/v2/push/getReceipts",
    ):
        self.push_url = push_url
        self.access_token = access_token
        self.timeout = timeout
        self.store = store
        self.receipts_url = receipts_url

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "CivicAlerts/1.0",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _post_chunk(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        response = requests.post(self.push_url, json=messages, headers=self._headers(), timeout=self.timeout)
        response.raise_for_status()
        tickets = response.json().get("data", [])
        if not isinstance(tickets, list):
            # Expo returns a bare object for single-message requests
            tickets = [tickets]
        return tickets

    def _post_receipt_ids(self, receipt_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        response = requests.post(
            self.receipts_url, json={"ids": receipt_ids}, headers=self._headers(), timeout=self.timeout
        )
        response.raise_for_status()
        return response.json().get("data") or {}

    def send(self, tokens: Sequence[str], payload: PushPayload) -> DeliveryResult:
        result = DeliveryResult()
        receipts = []
        valid = []
        for token in tokens:
            if is_valid_expo_push_token(token):
                valid.append(token)
            else:
                logger.warning(f"Skipping malformed push token {token!r}")
                result.failed += 1

        for start in range(0, len(valid), EXPO_CHUNK_SIZE):
            chunk = valid[start:start + EXPO_CHUNK_SIZE]
            try:
                tickets = self._post_chunk([payload.to_mobile_message(t) for t in chunk])
            except Exception as e:
                logger.error(f"Failed to send Expo push chunk of {len(chunk)}: {e}")
                result.failed += len(chunk)
                continue

            for i, token in enumerate(chunk):
                ticket = tickets[i] if i < len(tickets) else {}
                if ticket.get("status") == "ok":
                    result.sent += 1
                    if ticket.get("id"):
                        receipts.append((str(ticket["id"]), token))
                    continue

                result.failed += 1
                error = (ticket.get("details") or {}).get("error")
                if error == "DeviceNotRegistered":
                    result.expired.append(token)
                else:
                    logger.error(f"Expo push ticket error for {token}: {ticket}")

        if result.expired and self.store is not None:
            for token in result.expired:
                try:
                    self.store.deactivate_push_token(token)
                except Exception as e:
                    logger.error(f"Failed to deactivate token {token}: {e}")

        if receipts and self.store is not None:
            try:
                self.store.save_expo_receipts(receipts)
            except Exception as e:
                logger.error(f"Failed to store {len(receipts)} Expo receipt ids: {e}")

        return result

    def check_receipts(self, min_age_minutes: int = 30, limit: int = 1000) -> ReceiptCheckResult:
        """
        Look up receipts for stored tickets and retire tokens Expo reports as
        ``DeviceNotRegistered``.

        Receipts Expo does not return yet stay pending for the next check, and
        so do the ids of a chunk whose request fails. Store errors propagate.
        """
        result = ReceiptCheckResult()
        if self.store is None:
            return result

        pending = self.store.get_pending_expo_receipts(min_age_minutes, limit)
        tokens = {row["receipt_id"]: row["push_token"] for row in pending}
        ids = list(tokens)

        for start in range(0, len(ids), EXPO_RECEIPT_CHUNK_SIZE):
            chunk = ids[start:start + EXPO_RECEIPT_CHUNK_SIZE]
            try:
                receipts = self._post_receipt_ids(chunk)
            except Exception as e:
                logger.error(f"Failed to fetch {len(chunk)} Expo receipts: {e}")
                continue

            for receipt_id in chunk:
                receipt = receipts.get(receipt_id)
                if not receipt:
                    continue
                result.checked += 1

                if receipt.get("status") == "ok":
                    result.ok += 1
                    self.store.update_expo_receipt_status(receipt_id, "ok")
                    continue

                result.errors += 1
                error = (receipt.get("details") or {}).get("error")
                self.store.update_expo_receipt_status(receipt_id, "error", error, receipt.get("message"))
                if error == "DeviceNotRegistered":
                    self.store.deactivate_push_token(tokens[receipt_id])
                    result.deactivated += 1
                else:
                    logger.warning(f"Expo receipt {receipt_id} error for {tokens[receipt_id]}: {receipt}")

        logger.info(
            f"Expo receipts: {len(ids)} pending, checked={result.checked} ok={result.ok} "
            f"errors={result.errors} deactivated={result.deactivated}"
        )
        return result


class AlertDispatcher:
    """
    Fans one payload out to every endpoint registered for an identity.

    ``sent`` counts endpoints that accepted delivery, not subscribers. No
    channel's failure blocks another, and neither public method raises.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        web_push: Optional[WebPushChannel] = None,
        expo_push: Optional[ExpoPushChannel] = None,
    ):
        self.store = store
        self.web_push = web_push or WebPushChannel(store=store)
        self.expo_push = expo_push or ExpoPushChannel(store=store)

    def send_to_user(self, user_id: str, payload: PushPayload) -> DeliveryResult:
        """Deliver to all web-push endpoints and mobile tokens of one user."""
        total = DeliveryResult()

        try:
            endpoints = self.store.get_web_push_endpoints(user_id)
            total = total.merge(self.web_push.send(endpoints, payload))
        except Exception as e:
            logger.error(f"Web push delivery to {user_id} failed: {e}", exc_info=True)

        try:
            tokens = self.store.get_mobile_push_tokens(user_id)
            total = total.merge(self.expo_push.send(tokens, payload))
        except Exception as e:
            logger.error(f"Mobile push delivery to {user_id} failed: {e}", exc_info=True)

        logger.debug(f"Delivered '{payload.title}' to {user_id}: sent={total.sent} failed={total.failed}")
        return total

    def send_to_tokens(self, tokens: Sequence[str], payload: PushPayload) -> DeliveryResult:
        """Batch mobile delivery for anonymous devices."""
        if not tokens:
            return DeliveryResult()
        try:
            result = self.expo_push.send(tokens, payload)
        except Exception as e:
            logger.error(f"Device push delivery failed: {e}", exc_info=True)
            return DeliveryResult(failed=len(tokens))
        logger.info(f"Device push '{payload.title}': sent={result.sent} failed={result.failed}")
        return result
