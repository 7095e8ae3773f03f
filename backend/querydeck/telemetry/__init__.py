"""
Telemetry Module
================

Observability for the querydeck API.

Components:
- sentry.py: Error tracking

Environment Variables:
- SENTRY_DSN: Sentry project DSN
"""

from querydeck.telemetry.sentry import capture_exception, init_sentry, set_org_context

__all__ = [
    "init_sentry",
    "set_org_context",
    "capture_exception",
]
