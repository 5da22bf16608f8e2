"""
Sentiment Indexer Jobs Module

Durable batch job queue with priority scheduling, retry with backoff,
pause/resume/cancel and per-type handlers.
"""

from .context import HandlerResult, JobContext
from .handlers import JobHandler, build_handlers
from .queue import JobQueue, QueueConfig

__all__ = ["HandlerResult", "JobContext", "JobHandler", "build_handlers", "JobQueue", "QueueConfig"]
