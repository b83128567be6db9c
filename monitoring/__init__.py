"""Monitoring module.

Provides Prometheus metrics for stream lifecycle and encoder process
resource sampling.
"""

from .metrics import SupervisorMetrics
from .process_stats import ProcessStats, sample_process

__all__ = [
    "SupervisorMetrics",
    "ProcessStats",
    "sample_process",
]

__version__ = "1.0.0"
