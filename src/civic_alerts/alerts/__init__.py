# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/__init__.py
"""
Alert system for civic conditions: weather, river stage, air quality and traffic.

This module provides:
- Anomaly classification of upstream readings
- Subscription matching for authenticated users and anonymous devices
- A persisted ledger so each alert reaches each subscriber once
- Multi-channel push delivery (web push, Expo mobile push)
- The cron orchestrator that ties them together
"""

from .classifier import classify_reading, overall_status
from .delivery import AlertDispatcher, ExpoPushChannel, WebPushChannel
from .ledger import TriggeredAlertLedger
from .matcher import device_eligible, matches
from .orchestration import AlertCronOrchestrator, authorize_cron_request, build_orchestrator
from .payloads import build_notification_payload
from .sources import CivicSources
from .store import SubscriptionStore

__all__ = [
    "AlertCronOrchestrator",
    "AlertDispatcher",
    "CivicSources",
    "ExpoPushChannel",
    "SubscriptionStore",
    "TriggeredAlertLedger",
    "WebPushChannel",
    "authorize_cron_request",
    "build_notification_payload",
    "build_orchestrator",
    "classify_reading",
    "device_eligible",
    "matches",
    "overall_status",
]
