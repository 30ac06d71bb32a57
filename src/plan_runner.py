"""
Runs plan generation off the caller's thread.

Caller and worker exchange messages through two queues and share no other
state. Every run is tagged with a run id chosen by the caller; the worker
acts on one run at a time and ignores stop requests for any other id, and the
client drops progress and completion messages from stale runs.
"""
from dataclasses import dataclass, field
from typing import List, Tuple, Optional, Callable, Sequence, Union
import itertools
import logging
import queue
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor

from plan_params import GeneratePlanRequest, GeneratePlanResult, GeneratedPlanCandidate, PlanItem, Region
from plan_generator import PlanGenerationStatus, generate_plan, materialize_generated_plan

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 100

@dataclass(frozen=True)
class StartMessage:
    run_id: int
    request: GeneratePlanRequest

@dataclass(frozen=True)
class StopMessage:
    run_id: int

@dataclass(frozen=True)
class ShutdownMessage:
    pass

@dataclass(frozen=True)
class ReadyMessage:
    timestamp: float

@dataclass(frozen=True)
class ProgressMessage:
    run_id: int
    generation: int
    candidate: GeneratedPlanCandidate

@dataclass(frozen=True)
class DoneMessage:
    run_id: int
    candidate: GeneratedPlanCandidate
    cancelled: bool
    generation: int = 0
    status: str = PlanGenerationStatus.CONVERGED
    error: Optional[str] = None

IncomingMessage = Union[StartMessage, StopMessage, ShutdownMessage]
OutgoingMessage = Union[ReadyMessage, ProgressMessage, DoneMessage]

@dataclass
class RunHandle:
    """Caller-owned handle for one optimizer run."""
    run_id: int
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def cancel(self) -> None:
        self.cancel_event.set()

    def should_stop(self) -> bool:
        return self.cancel_event.is_set()

def format_worker_error(error: BaseException) -> str:
    message = str(error)
    if message:
        return f"{type(error).__name__}: {message}"
    return type(error).__name__ or "unknown worker error"

class PlanWorker:
    """
    Executes plan generation requests received on an inbox queue and
    reports on an outbox queue. Runs execute one at a time on a background
    thread; a newer start supersedes the active run.
    """

    def __init__(
        self,
        inbox: "queue.Queue[IncomingMessage]",
        outbox: "queue.Queue[OutgoingMessage]",
        generate: Callable[..., GeneratePlanResult] = generate_plan
    ):
        self.inbox = inbox
        self.outbox = outbox
        self._generate = generate
        self._lock = threading.Lock()
        self._active_run_id = -1
        self._cancelled_run_id = -1
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="plan-run")
        self._dispatcher: Optional[threading.Thread] = None

    @property
    def active_run_id(self) -> int:
        return self._active_run_id

    def start(self) -> None:
        if self._dispatcher is not None:
            return
        self._dispatcher = threading.Thread(target=self._dispatch, name="plan-worker", daemon=True)
        self._dispatcher.start()
        logger.debug("Plan worker started")
        self.outbox.put(ReadyMessage(timestamp=time.time()))

    def shutdown(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._cancelled_run_id = self._active_run_id
        self.inbox.put(ShutdownMessage())
        if self._dispatcher is not None:
            self._dispatcher.join(timeout)
            self._dispatcher = None
        self._executor.shutdown(wait=True)

    def _dispatch(self) -> None:
        while True:
            message = self.inbox.get()
            if isinstance(message, ShutdownMessage):
                break
            self.handle(message)

    def handle(self, message: IncomingMessage) -> None:
        if isinstance(message, StopMessage):
            with self._lock:
                if message.run_id != self._active_run_id:
                    logger.debug("Ignoring stop for inactive run %d", message.run_id)
                    return
                self._cancelled_run_id = message.run_id
            logger.info("Stop requested for run %d", message.run_id)
            return

        if isinstance(message, StartMessage):
            with self._lock:
                self._active_run_id = message.run_id
                self._cancelled_run_id = -1
            logger.info(
                "Run %d started: %d regions, target points=%s, target grade=%s",
                message.run_id,
                len(message.request.regions),
                message.request.target_point_count,
                message.request.target_average_grade
            )
            self._executor.submit(self._run, message.run_id, message.request)

    def _should_stop(self, run_id: int) -> bool:
        with self._lock:
            return self._active_run_id != run_id or self._cancelled_run_id == run_id

    def _run(self, run_id: int, request: GeneratePlanRequest) -> None:
        def on_progress(progress) -> None:
            if self._should_stop(run_id):
                return
            self.outbox.put(ProgressMessage(
                run_id=run_id,
                generation=progress.generation,
                candidate=progress.best
            ))
            if progress.generation % PROGRESS_LOG_EVERY == 0:
                logger.info(
                    "Run %d generation %d: score=%.4f points=%d grade=%.3f",
                    run_id, progress.generation, progress.best.score,
                    progress.best.total_points, progress.best.average_grade
                )

        try:
            result = self._generate(
                request,
                on_progress=on_progress,
                should_stop=lambda: self._should_stop(run_id),
                on_yield=lambda generation: time.sleep(0)
            )
        except Exception as exc:
            logger.error("Run %d failed: %s\n%s", run_id, exc, traceback.format_exc())
            self.outbox.put(DoneMessage(
                run_id=run_id,
                candidate=GeneratedPlanCandidate(),
                cancelled=True,
                status=PlanGenerationStatus.CANCELLED,
                error=format_worker_error(exc)
            ))
            return

        with self._lock:
            cancelled = self._cancelled_run_id == run_id or not result.completed

        logger.info(
            "Run %d finished (%s): score=%.4f points=%d grade=%.3f",
            run_id, result.status, result.score, result.total_points, result.average_grade
        )
        self.outbox.put(DoneMessage(
            run_id=run_id,
            candidate=result.candidate,
            cancelled=cancelled,
            generation=result.generation,
            status=result.status
        ))

class PlanGenerationClient:
    """
    Caller side of the worker protocol. Allocates increasing run ids and
    filters replies down to the run it currently cares about.
    """

    def __init__(self, worker: Optional[PlanWorker] = None):
        if worker is None:
            worker = PlanWorker(queue.Queue(), queue.Queue())
        self.worker = worker
        self.inbox = worker.inbox
        self.outbox = worker.outbox
        self._run_ids = itertools.count(1)
        self.current_run: Optional[RunHandle] = None
        self.ready = False

    def open(self) -> None:
        self.worker.start()

    def close(self) -> None:
        self.worker.shutdown()

    def start(self, request: GeneratePlanRequest) -> RunHandle:
        handle = RunHandle(run_id=next(self._run_ids))
        self.current_run = handle
        self.inbox.put(StartMessage(run_id=handle.run_id, request=request))
        return handle

    def stop(self) -> None:
        if self.current_run is None:
            return
        self.current_run.cancel()
        self.inbox.put(StopMessage(run_id=self.current_run.run_id))

    def poll(self, timeout: Optional[float] = None) -> List[OutgoingMessage]:
        """
        Drains the outbox. With a timeout, waits that long for the first
        message. Messages from runs other than the current one are dropped.
        """
        messages: List[OutgoingMessage] = []
        block = timeout is not None
        while True:
            try:
                message = self.outbox.get(block=block, timeout=timeout)
            except queue.Empty:
                break
            block = False

            if isinstance(message, ReadyMessage):
                self.ready = True
                messages.append(message)
                continue

            if self.current_run is None or message.run_id != self.current_run.run_id:
                logger.debug("Dropping %s from stale run %d", type(message).__name__, message.run_id)
                continue

            messages.append(message)
            if isinstance(message, DoneMessage):
                break
        return messages

    def wait_for_done(self, timeout: float = 60.0) -> Optional[DoneMessage]:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            for message in self.poll(timeout=max(0.0, min(0.5, deadline - time.monotonic()))):
                if isinstance(message, DoneMessage):
                    return message
        return None

def resolve_generation_done(
    done: DoneMessage,
    regions: Sequence[Region],
    id_factory: Callable[[], str]
) -> Tuple[str, Optional[List[PlanItem]]]:
    """Status text for the caller and the plan to adopt (None when stopped)."""
    if done.error:
        return f"Plan generation failed: {done.error}", None
    if done.cancelled:
        return "Plan generation stopped.", None
    plan = materialize_generated_plan(done.candidate, [r.key for r in regions], id_factory)
    return "Plan generation complete.", plan
