"""
Background job queue: lanes, producer, worker pool.
"""

from feedback_hub.jobs.models import BackoffPolicy, BackoffType, Job, JobHandle, JobOptions, JobStatus, Lane

__all__ = ["BackoffPolicy", "BackoffType", "Job", "JobHandle", "JobOptions", "JobStatus", "Lane"]
