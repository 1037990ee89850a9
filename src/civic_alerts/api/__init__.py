# SPDX-License-Identifier: MIT
# src/civic_alerts/api/__init__.py
"""HTTP surface: the cron trigger, the city summary and a health check."""
