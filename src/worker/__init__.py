"""
Queue worker: the single-job step and the budgeted loops that drive it.
"""
from .process import WorkerResult, WorkerStatus, process_one_job
from .drivers import DriverReport, run_until_budget

__all__ = [
    "WorkerResult",
    "WorkerStatus",
    "process_one_job",
    "DriverReport",
    "run_until_budget",
]
