"""Background workers for async processing tasks."""

from nero.workers.sweeper import run_sweeper_worker

__all__ = ["run_sweeper_worker"]
