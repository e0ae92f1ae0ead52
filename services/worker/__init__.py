"""
Worker Update Pipeline

Runs jobs and records their progress as ordered events.

Usage:
    from services.worker import JobRunner, simulate_job

    runner = JobRunner(store, channel)
    job_id = await runner.submit(simulate_job(steps=3))
"""

from .demo import simulate_job
from .pipeline import JobPipeline
from .runner import JobHandler, JobRunner, run_job

__all__ = [
    "JobHandler",
    "JobPipeline",
    "JobRunner",
    "run_job",
    "simulate_job",
]
