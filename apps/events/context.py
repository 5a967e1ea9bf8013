"""
Logging/audit context for batch jobs.

Management commands run outside HTTP requests. job_context() binds a trace ID
and the job name so outbox events, audit records and log lines emitted by a
sweep can be correlated.
"""

from collections.abc import Generator
from contextlib import contextmanager
from uuid import uuid4

from apps.core.logging import bind_contextvars, clear_contextvars


@contextmanager
def job_context(job: str, trace_id: str | None = None) -> Generator[str, None, None]:
    """
    Bind trace_id and job for the duration of the block.

    Usage:
        with job_context("rollover_billing_periods") as trace_id:
            rollover_billing_periods()
    """
    generated = trace_id or str(uuid4())
    bind_contextvars(trace_id=generated, job=job)
    try:
        yield generated
    finally:
        clear_contextvars()
