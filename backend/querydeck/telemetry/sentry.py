"""
Sentry Error Tracking
=====================

Error tracking for the query and ingestion API.

Related files:
- querydeck/main.py: Initializes Sentry on app startup
- querydeck/routers/*.py: Set org context and capture engine failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def init_sentry(dsn: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.

    Example:
        def create_app():
            init_sentry()
            app = FastAPI()
            ...
    """
    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.debug("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            LoggingIntegration(
                level=logging.INFO,        # INFO+ as breadcrumbs
                event_level=logging.ERROR,  # ERROR+ as events
            ),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
        release=os.environ.get("RELEASE_VERSION"),
    )
    logger.info(f"[SENTRY] Initialized for {environment} environment")
    return True


def set_org_context(org_id: str, api_key_prefix: Optional[str] = None) -> None:
    """Tag subsequent events in this request with the organization."""
    sentry_sdk.set_tag("org_id", org_id)
    if api_key_prefix:
        sentry_sdk.set_tag("api_key_prefix", api_key_prefix)


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Report an exception that is handled (answered with an error response).

    Example:
        except SQLAlchemyError as e:
            capture_exception(e, extra={"org_id": query.org_id})
            raise HTTPException(status_code=500, ...)
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
