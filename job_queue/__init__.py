"""
Job Queue — Durable-log dispatchers for events and scheduled tasks.

- EventDispatcher polls unprocessed events and routes them by type
  (at-least-once, retry bookkeeping, dead letters)
- TaskDispatcher polls due tasks and drives their pending/processing/
  completed/failed state machine with exponential backoff
- TaskReaper reclaims tasks abandoned in processing
- PollingLoop runs any of the above on a fixed interval
"""
from job_queue.errors import NonRetryableError
from job_queue.registry import HandlerRegistry
from job_queue.event_dispatcher import EventDispatcher
from job_queue.task_dispatcher import TaskDispatcher, schedule_task, compute_backoff
from job_queue.reaper import TaskReaper
from job_queue.poller import PollingLoop

__all__ = [
    "NonRetryableError", "HandlerRegistry",
    "EventDispatcher", "TaskDispatcher", "schedule_task", "compute_backoff",
    "TaskReaper", "PollingLoop",
]
