"""Encoder process resource sampling."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


@dataclass
class ProcessStats:
    """Resource usage of one encoder process."""

    pid: int
    alive: bool
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    zombie: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "alive": self.alive,
            "cpu_percent": round(self.cpu_percent, 1),
            "memory_mb": round(self.memory_mb, 1),
            "zombie": self.zombie,
            "error": self.error,
        }


def sample_process(pid: int, interval: Optional[float] = None) -> ProcessStats:
    """
    Sample CPU and memory usage of a process.

    Args:
        pid: Process ID
        interval: CPU sampling interval in seconds; None compares against
            the previous call and does not block

    Returns:
        ProcessStats (``alive`` False if the process is gone)
    """
    try:
        process = psutil.Process(pid)
        cpu_percent = process.cpu_percent(interval=interval)
        memory_mb = process.memory_info().rss / (1024 * 1024)
        zombie = process.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return ProcessStats(pid=pid, alive=False, error="Process not found")
    except psutil.AccessDenied:
        logger.warning(f"Access denied to metrics of process {pid}")
        return ProcessStats(pid=pid, alive=True, error="Access denied to process metrics")

    if zombie:
        logger.warning(f"Encoder process {pid} is a zombie")
    return ProcessStats(
        pid=pid,
        alive=not zombie,
        cpu_percent=cpu_percent,
        memory_mb=memory_mb,
        zombie=zombie,
    )
