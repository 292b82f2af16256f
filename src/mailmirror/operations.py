"""In-memory status tracking for background sync and export runs."""

import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable

from .errors import ConflictError

logger = logging.getLogger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
IDLE = {"status": "idle"}


@dataclass
class OperationRecord:
    """Status of one sync or export run."""
    key: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    result: dict | None = None
    error: str | None = None
    expires_at: float | None = None  # registry clock time
    polled: bool = False

    def to_dict(self) -> dict:
        data = {
            "status": self.status,
            "startedAt": self.started_at.isoformat(),
        }
        if self.completed_at:
            data["completedAt"] = self.completed_at.isoformat()
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


class OperationRegistry:
    """Running/finished operations keyed by account id or export id.

    `try_start` is an atomic test-and-set: two concurrent triggers for the
    same key cannot both get a running record. Finished records are dropped
    `retention` seconds after completion, but never before they have been
    read at least once.
    """

    def __init__(self, retention: float, clock: Callable[[], float] = time.monotonic):
        self.retention = retention
        self._clock = clock
        self._records: dict[str, OperationRecord] = {}
        self._lock = threading.Lock()

    def _prune(self) -> None:
        now = self._clock()
        expired = [
            key for key, rec in self._records.items()
            if rec.expires_at is not None and rec.expires_at <= now and rec.polled
        ]
        for key in expired:
            del self._records[key]

    def try_start(self, key: str) -> OperationRecord:
        with self._lock:
            self._prune()
            existing = self._records.get(key)
            if existing and existing.status == RUNNING:
                raise ConflictError(f"Operation already in progress for {key}")
            record = OperationRecord(key=key, status=RUNNING, started_at=datetime.now(timezone.utc))
            self._records[key] = record
            return replace(record)

    def _finish(self, key: str, status: str, result: dict | None = None, error: str | None = None) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                logger.warning("Finishing unknown operation %s", key)
                return
            record.status = status
            record.completed_at = datetime.now(timezone.utc)
            record.result = result
            record.error = error
            record.expires_at = self._clock() + self.retention

    def complete(self, key: str, result: dict) -> None:
        self._finish(key, COMPLETED, result=result)

    def fail(self, key: str, error: str) -> None:
        self._finish(key, FAILED, error=error)

    def get(self, key: str) -> OperationRecord | None:
        with self._lock:
            self._prune()
            record = self._records.get(key)
            if record is None:
                return None
            if record.status != RUNNING:
                record.polled = True
            return replace(record)

    def is_running(self, key: str) -> bool:
        record = self.get(key)
        return record is not None and record.status == RUNNING


class BackgroundCoordinator:
    """Runs operations on an executor and records their outcome in a registry.

    The trigger returns as soon as the task is submitted; the task reports
    completion only by writing to the registry.
    """

    def __init__(
        self,
        operations: OperationRegistry,
        executor: Executor | None = None,
        max_workers: int = 4,
    ):
        self.operations = operations
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=type(self).__name__,
        )

    def _launch(
        self,
        key: str,
        fn: Callable[[], dict],
        on_success: Callable[[dict], None] | None = None,
    ) -> Future:
        self.operations.try_start(key)

        def task() -> dict | None:
            try:
                result = fn()
            except Exception as e:
                logger.error("%s failed: %s", key, e)
                self.operations.fail(key, str(e))
                return None
            if on_success:
                try:
                    on_success(result)
                except Exception as e:
                    logger.warning("Post-completion step for %s failed: %s", key, e)
            self.operations.complete(key, result)
            return result

        try:
            return self._executor.submit(task)
        except RuntimeError as e:
            self.operations.fail(key, str(e))
            raise

    def status(self, key: str) -> dict:
        record = self.operations.get(key)
        return record.to_dict() if record else dict(IDLE)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
