"""
Observability module - Logging and Metrics.
"""

from iapledger.observability.logging import log_context, setup_logging
from iapledger.observability.metrics import metrics

__all__ = [
    "log_context",
    "setup_logging",
    "metrics",
]
