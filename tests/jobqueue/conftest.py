"""
Job Queue Test Fixtures.

Base fixtures:
  - Empty database (temp file)
  - Mocked clock at fixed time
  - Recording publisher / broadcaster

Per-test fixtures:
  - Components wired to the mocked clock
  - Job factories for each initial status
"""

import pytest
import tempfile
import threading
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator, Optional

from src.jobqueue import (
    Dispatcher,
    EngineConfig,
    HandlerRegistry,
    HandlerResult,
    Job,
    JobHandler,
    JobPriority,
    JobQueueService,
    JobScheduler,
    JobStatus,
    MetricsAggregator,
    PersistenceAdapter,
    RecoveryManager,
    RetryController,
    StateMachine,
)


# Fixed time for deterministic tests
FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

TEST_JOB_TYPE = "test"


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at fixed epoch
    - Advances only when explicitly ticked
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time

    def now(self) -> datetime:
        return self._current

    def tick(self, seconds: float = 1) -> None:
        """Advance time by specified seconds."""
        self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        self._current = time


class RecordingPublisher:
    """Publisher that keeps every publication."""

    def __init__(self):
        self.published: list[tuple[str, Job]] = []

    def publish(self, topic: str, job: Job) -> None:
        self.published.append((topic, job))

    def jobs_on(self, topic: str) -> list[Job]:
        return [job for t, job in self.published if t == topic]


class RecordingBroadcaster:
    """Broadcaster that keeps every push."""

    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    def broadcast(self, channel: str, payload: dict) -> None:
        self.messages.append((channel, payload))

    def on(self, channel: str) -> list[dict]:
        return [payload for c, payload in self.messages if c == channel]


class SlowBroadcaster(RecordingBroadcaster):
    """Broadcaster behind a slow network link."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def broadcast(self, channel: str, payload: dict) -> None:
        time.sleep(self.delay)
        super().broadcast(channel, payload)


class FailingBroadcaster:
    """Broadcaster whose transport is down."""

    def broadcast(self, channel: str, payload: dict) -> None:
        raise ConnectionError("broadcast transport down")


class ScriptedHandler(JobHandler):
    """
    Handler returning scripted outcomes in order.

    Script entries are HandlerResults or exceptions to raise; once the
    script is used up every call succeeds.
    """

    job_type = TEST_JOB_TYPE

    def __init__(self, script: Optional[list] = None):
        self.script = deque(script or [])
        self.calls: list = []
        self._lock = threading.Lock()

    def then(self, *outcomes) -> "ScriptedHandler":
        self.script.extend(outcomes)
        return self

    def execute(self, payload):
        with self._lock:
            self.calls.append(payload)
            outcome = self.script.popleft() if self.script else HandlerResult.ok()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class BlockingHandler(JobHandler):
    """Handler that holds its worker until released."""

    job_type = "blocking"

    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Semaphore(0)

    def execute(self, payload):
        self.started.release()
        self.release.wait(timeout=10)
        return HandlerResult.ok(payload)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    Path(db_path).unlink(missing_ok=True)
    # Also cleanup WAL and SHM files
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def store(temp_db_path: str) -> PersistenceAdapter:
    """Create a fresh PersistenceAdapter with empty database."""
    return PersistenceAdapter(temp_db_path)


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def handler() -> ScriptedHandler:
    """Handler registered for TEST_JOB_TYPE."""
    return ScriptedHandler()


@pytest.fixture
def blocking_handler() -> Generator[BlockingHandler, None, None]:
    blocking = BlockingHandler()
    yield blocking
    blocking.release.set()


@pytest.fixture
def registry(handler: ScriptedHandler, blocking_handler: BlockingHandler) -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(TEST_JOB_TYPE, handler)
    registry.register(BlockingHandler.job_type, blocking_handler)
    return registry


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def metrics(mock_clock: MockClock, broadcaster: RecordingBroadcaster) -> MetricsAggregator:
    return MetricsAggregator(clock=mock_clock, broadcaster=broadcaster)


@pytest.fixture
def state_machine(
    store: PersistenceAdapter,
    mock_clock: MockClock,
    metrics: MetricsAggregator,
) -> StateMachine:
    """StateMachine feeding the metrics aggregator."""
    return StateMachine(store, clock=mock_clock, listeners=[metrics.on_transition])


@pytest.fixture
def retry_controller(
    store: PersistenceAdapter,
    state_machine: StateMachine,
    publisher: RecordingPublisher,
    mock_clock: MockClock,
) -> RetryController:
    return RetryController(store, state_machine, publisher, clock=mock_clock)


@pytest.fixture
def dispatcher(
    store: PersistenceAdapter,
    state_machine: StateMachine,
    registry: HandlerRegistry,
    retry_controller: RetryController,
) -> Generator[Dispatcher, None, None]:
    """Create a Dispatcher with a pool of 2 workers."""
    disp = Dispatcher(
        store=store,
        state_machine=state_machine,
        registry=registry,
        retry_controller=retry_controller,
        pool_size=2,
        dispatcher_id="test-host",
    )
    yield disp
    disp.shutdown(wait_for_jobs=False)


@pytest.fixture
def scheduler(
    store: PersistenceAdapter,
    state_machine: StateMachine,
    mock_clock: MockClock,
) -> JobScheduler:
    return JobScheduler(store, state_machine, clock=mock_clock)


@pytest.fixture
def recovery_manager(
    store: PersistenceAdapter,
    state_machine: StateMachine,
    retry_controller: RetryController,
) -> RecoveryManager:
    return RecoveryManager(store, state_machine, retry_controller)


@pytest.fixture
def service(
    temp_db_path: str,
    registry: HandlerRegistry,
    publisher: RecordingPublisher,
    broadcaster: RecordingBroadcaster,
    mock_clock: MockClock,
) -> Generator[JobQueueService, None, None]:
    """Fully wired service on the mocked clock (loops not started)."""
    svc = JobQueueService.create(
        EngineConfig(db_path=temp_db_path, worker_pool_size=2),
        registry,
        publisher=publisher,
        broadcaster=broadcaster,
        clock=mock_clock,
    )
    yield svc
    svc.stop(timeout=5)
    svc.dispatcher.shutdown(wait_for_jobs=False)


# =============================================================================
# Job Factory Fixtures
# =============================================================================


@pytest.fixture
def create_job(state_machine: StateMachine, mock_clock: MockClock) -> Callable[..., Job]:
    """Factory for persisted jobs created at the mocked clock's time."""

    def _create(
        job_type: str = TEST_JOB_TYPE,
        payload=None,
        priority: JobPriority = JobPriority.MEDIUM,
        max_retries: int = 5,
        scheduled_time: Optional[datetime] = None,
        cron_expression: Optional[str] = None,
    ) -> Job:
        job = Job.create(
            job_type=job_type,
            payload=payload,
            priority=priority,
            max_retries=max_retries,
            scheduled_time=scheduled_time,
            cron_expression=cron_expression,
            created_at=mock_clock.now(),
        )
        return state_machine.create(job)

    return _create


@pytest.fixture
def claim(state_machine: StateMachine) -> Callable[[Job], Job]:
    """Move a PENDING job to PROCESSING."""

    def _claim(job: Job, worker_id: str = "test-worker") -> Job:
        return state_machine.transition(job, JobStatus.PROCESSING, worker_id=worker_id)

    return _claim


@pytest.fixture
def fail(state_machine: StateMachine) -> Callable[[Job], Job]:
    """Move a PROCESSING job to FAILED."""

    def _fail(job: Job, error: str = "boom") -> Job:
        return state_machine.transition(job, JobStatus.FAILED, error_message=error)

    return _fail


@pytest.fixture
def complete(state_machine: StateMachine) -> Callable[[Job], Job]:
    """Move a PROCESSING job to COMPLETED."""

    def _complete(job: Job) -> Job:
        return state_machine.transition(job, JobStatus.COMPLETED)

    return _complete


# =============================================================================
# Assertion Helpers
# =============================================================================


def assert_job_status(store: PersistenceAdapter, job_id: str, expected: JobStatus) -> Job:
    """Assert a job's stored status and return the stored job."""
    job = store.get_job(job_id)
    assert job is not None, f"Job {job_id} not found"
    assert job.status == expected, f"Expected {expected.value}, got {job.status.value}"
    return job


def poll_and_wait(dispatcher: Dispatcher, timeout: float = 5.0) -> list[Job]:
    """Run one dispatcher poll and wait for the claimed jobs to finish."""
    claimed = dispatcher.poll()
    assert dispatcher.drain(timeout=timeout), "Jobs still running after drain timeout"
    return claimed
