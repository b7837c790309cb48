"""
Shared test fixtures for the recordsync library.

Usage:
    from tests.fixtures import BASE_TIME, make_legacy_entity, populate, touched
    from tests.fixtures import collect_metrics, metric_total
"""

from tests.fixtures.entities import (
    BASE_TIME,
    DEFAULT_ORDER_ATTRIBUTES,
    make_legacy_entity,
    populate,
    touched,
)
from tests.fixtures.metrics import collect_metrics, metric_total

__all__ = [
    "BASE_TIME",
    "DEFAULT_ORDER_ATTRIBUTES",
    "make_legacy_entity",
    "populate",
    "touched",
    "collect_metrics",
    "metric_total",
]
