"""
Job handlers and their registry.

A handler runs the business logic for one job type. It receives the job's
payload unexamined and reports the outcome as a HandlerResult; anything it
raises is turned into a failed result by the dispatcher's worker.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .errors import ExecutionError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of one handler execution."""

    success: bool
    output: Any = None
    error: Optional[ExecutionError] = None

    @classmethod
    def ok(cls, output: Any = None) -> "HandlerResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, job_type: str, message: str) -> "HandlerResult":
        return cls(success=False, error=ExecutionError(job_type, message))

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return self.error.message


class JobHandler(ABC):
    """
    Abstract base class for job type handlers.

    Each job type registers one implementation.
    """

    job_type: str = ""

    @abstractmethod
    def execute(self, payload: Union[str, bytes, None]) -> HandlerResult:
        """
        Execute the job.

        Args:
            payload: The job's opaque payload

        Returns:
            HandlerResult.ok(...) or HandlerResult.fail(...)
        """
        ...


class FunctionHandler(JobHandler):
    """
    Adapts a plain callable into a JobHandler.

    A callable returning a HandlerResult is passed through; any other return
    value counts as success with that value as output.
    """

    def __init__(self, job_type: str, func: Callable[[Any], Any]):
        self.job_type = job_type
        self.func = func

    def execute(self, payload: Union[str, bytes, None]) -> HandlerResult:
        result = self.func(payload)
        if isinstance(result, HandlerResult):
            return result
        return HandlerResult.ok(result)


class HandlerRegistry:
    """Maps job types to handlers."""

    def __init__(self):
        self._handlers: dict[str, JobHandler] = {}
        self._lock = threading.Lock()

    def register(
        self,
        job_type: str,
        handler: Union[JobHandler, Callable[[Any], Any]],
    ) -> JobHandler:
        """
        Register the handler for job_type, replacing any previous one.

        Plain callables are wrapped in a FunctionHandler.
        """
        if not job_type:
            raise ValueError("job_type must be a non-empty string")
        if not isinstance(handler, JobHandler):
            if not callable(handler):
                raise TypeError(f"Handler for {job_type} must be a JobHandler or callable")
            handler = FunctionHandler(job_type, handler)

        with self._lock:
            if job_type in self._handlers:
                logger.warning(f"Replacing handler for job type '{job_type}'")
            self._handlers[job_type] = handler

        logger.info(f"Registered handler for job type '{job_type}'")
        return handler

    def unregister(self, job_type: str) -> None:
        with self._lock:
            self._handlers.pop(job_type, None)

    def resolve(self, job_type: str) -> Optional[JobHandler]:
        """Get the handler for job_type, or None if unregistered."""
        with self._lock:
            return self._handlers.get(job_type)

    def is_registered(self, job_type: str) -> bool:
        return self.resolve(job_type) is not None

    @property
    def job_types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)
