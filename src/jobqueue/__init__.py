"""
Job Queue Engine.

Job lifecycle core:
- State machine over versioned job records
- Priority dispatch to a bounded worker pool
- Exponential-backoff retries and dead-lettering
- Scheduled and cron-recurring jobs
- Incrementally maintained metrics
"""

from .entities import (
    JobStatus,
    JobPriority,
    Job,
    TransitionEvent,
)
from .errors import (
    JobQueueError,
    ValidationError,
    UnknownJobTypeError,
    InvalidCronExpressionError,
    JobNotFoundError,
    InvalidTransitionError,
    ConflictError,
    ExecutionError,
    DeadLetterCondition,
)
from .clock import Clock, SystemClock
from .interfaces import (
    JobStore,
    Publisher,
    Broadcaster,
    LoggingPublisher,
    LoggingBroadcaster,
    JOB_TOPIC,
    DEAD_LETTER_TOPIC,
    STATUS_CHANNEL,
    METRICS_CHANNEL,
)
from .persistence import PersistenceAdapter
from .state_machine import StateMachine, ALLOWED_TRANSITIONS
from .handlers import JobHandler, FunctionHandler, HandlerResult, HandlerRegistry
from .retry_controller import RetryPolicy, RetryController, Requeue, DeadLetter
from .cron import CronSchedule, validate_cron_expression
from .scheduler import JobScheduler
from .dispatcher import Dispatcher
from .metrics import JobMetrics, MetricsAggregator, RollingWindowCounter
from .outbox import BroadcastOutbox
from .ticker import PeriodicTask, TaskState
from .recovery import RecoveryManager
from .config import EngineConfig
from .service import EngineContext, JobQueueService

__all__ = [
    # Entities
    "JobStatus",
    "JobPriority",
    "Job",
    "TransitionEvent",
    # Errors
    "JobQueueError",
    "ValidationError",
    "UnknownJobTypeError",
    "InvalidCronExpressionError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "ConflictError",
    "ExecutionError",
    "DeadLetterCondition",
    # Collaborators
    "Clock",
    "SystemClock",
    "JobStore",
    "Publisher",
    "Broadcaster",
    "LoggingPublisher",
    "LoggingBroadcaster",
    "JOB_TOPIC",
    "DEAD_LETTER_TOPIC",
    "STATUS_CHANNEL",
    "METRICS_CHANNEL",
    # Persistence
    "PersistenceAdapter",
    # State machine
    "StateMachine",
    "ALLOWED_TRANSITIONS",
    # Handlers
    "JobHandler",
    "FunctionHandler",
    "HandlerResult",
    "HandlerRegistry",
    # Retry
    "RetryPolicy",
    "RetryController",
    "Requeue",
    "DeadLetter",
    # Scheduling
    "CronSchedule",
    "validate_cron_expression",
    "JobScheduler",
    # Dispatcher
    "Dispatcher",
    # Metrics
    "JobMetrics",
    "MetricsAggregator",
    "RollingWindowCounter",
    "BroadcastOutbox",
    # Loops
    "PeriodicTask",
    "TaskState",
    # Recovery
    "RecoveryManager",
    # Service
    "EngineConfig",
    "EngineContext",
    "JobQueueService",
]
