"""Logging configuration and Prometheus counters shared across services."""

from __future__ import annotations

import logging
import os

import structlog
from prometheus_client import REGISTRY, Counter


def configure_logging(level: str | None = None) -> None:
    """Configure stdlib logging and structlog for JSON output."""

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames=()):
    # Module reloads in tests must not register the same collector twice.
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


APPOINTMENTS_CREATED = _get_or_create_metric(
    Counter, "prontivus_appointments_created_total", "Appointments booked"
)
SCHEDULE_CONFLICTS = _get_or_create_metric(
    Counter,
    "prontivus_schedule_conflicts_total",
    "Booking attempts rejected by a schedule conflict",
    ["kind"],
)
AI_ANALYSES = _get_or_create_metric(
    Counter, "prontivus_ai_analyses_total", "AI consultation analyses", ["status"]
)
AI_TOKENS_CONSUMED = _get_or_create_metric(
    Counter, "prontivus_ai_tokens_consumed_total", "Tokens charged to clinic quotas"
)
WEBHOOK_EVENTS = _get_or_create_metric(
    Counter,
    "prontivus_webhook_events_total",
    "Payment webhook events",
    ["event_type", "outcome"],
)
HTTP_REQUESTS = _get_or_create_metric(
    Counter, "prontivus_http_requests_total", "HTTP requests served", ["method", "status"]
)


__all__ = [
    "configure_logging",
    "APPOINTMENTS_CREATED",
    "SCHEDULE_CONFLICTS",
    "AI_ANALYSES",
    "AI_TOKENS_CONSUMED",
    "WEBHOOK_EVENTS",
    "HTTP_REQUESTS",
]
