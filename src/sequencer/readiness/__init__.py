"""Readiness predicates per resource kind."""

from .oracle import (
    DEFAULT_FAILED_NOT_VISIBLE_POLLS,
    DEFAULT_POLL_TIMEOUT_SECONDS,
    Readiness,
    ReadinessOracle,
    ReadinessStatus,
)

__all__ = [
    'DEFAULT_FAILED_NOT_VISIBLE_POLLS',
    'DEFAULT_POLL_TIMEOUT_SECONDS',
    'Readiness',
    'ReadinessOracle',
    'ReadinessStatus',
]
