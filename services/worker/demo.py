"""
Demo job used by `POST /jobs` with {"demo": true} and the CLI.

Simulates a multi-step job with realistic progress events so the stream
can be exercised without real work behind it.
"""

import asyncio
import random
from typing import Any, Optional

from core.errors import JobExecutionFailure

from .pipeline import JobPipeline
from .runner import JobHandler

STEP_MESSAGES = [
    "Fetching input",
    "Validating records",
    "Transforming data",
    "Writing output",
    "Verifying results",
]


def simulate_job(
    steps: int = 4,
    step_delay: float = 0.5,
    fail_at: Optional[int] = None,
    result: Any = "Success!",
    jitter: float = 0.0,
) -> JobHandler:
    """
    Build a handler that reports `steps` progress increments.

    With fail_at set, step number fail_at (1-based) raises
    JobExecutionFailure instead of reporting progress.
    """

    async def handler(pipeline: JobPipeline) -> Any:
        for step in range(1, steps + 1):
            description = STEP_MESSAGES[(step - 1) % len(STEP_MESSAGES)]

            if fail_at is not None and step == fail_at:
                raise JobExecutionFailure(f"Step {step} failed: {description}", code="step_failed")

            await pipeline.log(f"Step {step}/{steps}: {description}")
            delay = step_delay + (random.uniform(0, jitter) if jitter else 0)
            if delay:
                await asyncio.sleep(delay)

            percent = round(step / steps * 100, 1)
            # The terminal event carries 100%
            if step < steps:
                await pipeline.progress(percent, f"{description} ({step}/{steps})")

        return result

    return handler
