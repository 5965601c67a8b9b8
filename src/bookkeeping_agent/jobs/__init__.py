"""Durable job queue feeding the orchestration worker."""

from .queue import (
    JOB_ACTION_EXECUTION,
    JOB_SAGA_EXECUTION,
    Job,
    JobQueue,
    JobQueueError,
    enqueue_action_execution,
    enqueue_saga_job,
    saga_singleton_key,
)
