"""Scheduler exports."""

from .apsched_adapter import APSchedulerAdapter, CatalogJobs

__all__ = ["APSchedulerAdapter", "CatalogJobs"]
