"""
Scheduling, scan orchestration and queue housekeeping.
"""
from .jobs import setup_scheduler, shutdown_scheduler, scheduler
from .stale_monitor import start_stale_monitor, stop_stale_monitor

__all__ = [
    "setup_scheduler",
    "shutdown_scheduler",
    "scheduler",
    "start_stale_monitor",
    "stop_stale_monitor",
]
