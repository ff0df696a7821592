import threading
import queue
import time
from typing import Callable, Optional, Dict, Union
import logging

from .errors import DependencyFailure
from .schemas import ObjectCreatedEvent, TransactionStatus

logger = logging.getLogger("invoice_import.worker")

IngestHandler = Callable[[ObjectCreatedEvent], Optional[TransactionStatus]]

_STOP = object()


def execute_with_timeout(
    func: Callable[[], Optional[TransactionStatus]], timeout_seconds: float, name: str
) -> Optional[TransactionStatus]:
    result_container: Dict[str, Optional[TransactionStatus]] = {}
    error_container: Dict[str, BaseException] = {}

    def _target() -> None:
        try:
            result_container["value"] = func()
        except BaseException as e:
            error_container["error"] = e

    t = threading.Thread(target=_target, name=name, daemon=True)
    t.start()
    t.join(timeout_seconds)
    if t.is_alive():
        raise TimeoutError(f"Ingestion timed out after {timeout_seconds} seconds")
    if "error" in error_container:
        raise error_container["error"]
    return result_container.get("value")


class IngestionWorker:
    """Delivers object-created events to the ingestion handler, at least once."""

    def __init__(
        self,
        handler: IngestHandler,
        max_retries: int = 3,
        task_timeout_seconds: float = 5.0,
        on_idle: Optional[Callable[[], object]] = None,
        idle_interval_seconds: float = 60.0,
    ) -> None:
        self._handler = handler
        self._q: "queue.Queue[Union[ObjectCreatedEvent, object]]" = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._max_retries = max_retries
        self._task_timeout_seconds = task_timeout_seconds
        self._on_idle = on_idle
        self._idle_interval_seconds = idle_interval_seconds
        self._last_idle_run: Optional[float] = None
        # in-memory attempts tracker (resets on process restart)
        self._attempts: Dict[str, int] = {}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="ingestion-worker", daemon=True)
        self._thread.start()
        logger.info("Ingestion worker started")

    def stop(self) -> None:
        self._stop_event.set()
        # put a sentinel to unblock queue if waiting
        self._q.put_nowait(_STOP)
        if self._thread:
            self._thread.join(timeout=2.0)
        logger.info("Ingestion worker stopped")

    def enqueue(self, event: ObjectCreatedEvent) -> None:
        self._q.put_nowait(event)
        logger.info("Enqueued object %s/%s", event.bucket, event.key)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._q.get(timeout=0.5)
            except queue.Empty:
                self._idle()
                continue
            if event is _STOP:
                break
            self.process(event)
            self._q.task_done()

    def _idle(self) -> None:
        if self._on_idle is None:
            return
        now = time.monotonic()
        if self._last_idle_run is not None and now - self._last_idle_run < self._idle_interval_seconds:
            return
        self._last_idle_run = now
        try:
            self._on_idle()
        except Exception:
            logger.exception("Idle housekeeping failed")

    def process(self, event: ObjectCreatedEvent) -> Optional[TransactionStatus]:
        key = event.key
        logger.info("Processing object %s/%s", event.bucket, key)
        try:
            status = execute_with_timeout(
                lambda: self._handler(event), self._task_timeout_seconds, f"ingest-{key}"
            )
        except (DependencyFailure, TimeoutError) as ex:
            # Retry policy: redeliver up to self._max_retries times
            attempts = self._attempts.get(key, 0) + 1
            self._attempts[key] = attempts
            if attempts <= self._max_retries:
                logger.warning(
                    "Attempt %s/%s failed for key=%s (%s). Redelivering...",
                    attempts,
                    self._max_retries,
                    key,
                    ex.__class__.__name__,
                )
                self.enqueue(event)
                return None
            self._attempts.pop(key, None)
            logger.error("Giving up on key=%s after %s attempts: %s", key, attempts, ex)
            return None
        except Exception:
            self._attempts.pop(key, None)
            logger.exception("Unexpected error ingesting key=%s", key)
            return None
        self._attempts.pop(key, None)
        logger.info("Ingestion finished for key=%s status=%s", key, status.value if status else None)
        return status
