"""Scheduled jobs: the time-based sweeps and their scheduler."""

from .scheduler import SWEEP_NAMES, SweepScheduler, send_alert
from .sweeps import ProjectDigest, SweepResult, SweepService

__all__ = [
    "SWEEP_NAMES",
    "SweepScheduler",
    "send_alert",
    "ProjectDigest",
    "SweepResult",
    "SweepService",
]
