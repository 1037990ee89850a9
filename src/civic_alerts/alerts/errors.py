# SPDX-License-Identifier: MIT
# src/civic_alerts/alerts/errors.py
"""
Exception types raised inside the alert pipeline.
"""
from __future__ import annotations


class AlertPipelineError(Exception):
    """Base class for alert pipeline errors."""


class UpstreamFetchError(AlertPipelineError):
    """A data source could not be read (transport error, non-2xx, bad JSON)."""

    def __init__(self, domain: str, message: str):
        super().__init__(f"[{domain}] {message}")
        self.domain = domain


class LedgerError(AlertPipelineError):
    """The triggered-alert ledger could not be read or written."""


class AuthorizationError(AlertPipelineError):
    """The cron trigger did not present valid credentials."""
