# SPDX-License-Identifier: MIT
# src/civic_alerts/__init__.py
"""
Civic alerts: scheduled detection, matching, deduplication and push delivery
of weather, river, air-quality and traffic alerts for one community.
"""

__version__ = "0.1.0"
