"""Run scheduling and background tasks."""

from .scheduler import CeleryRunScheduler, InMemoryRunScheduler, RunScheduler

__all__ = ["CeleryRunScheduler", "InMemoryRunScheduler", "RunScheduler"]
