"""
Instrumentation package for request and pipeline metrics.

This package provides:
- Prometheus counters/gauges for ingestion, scoring, clustering and fanout
- FastAPI middleware for request instrumentation
"""

from . import metrics
from .middleware import InstrumentationMiddleware

__all__ = [
    'metrics',
    'InstrumentationMiddleware',
]
