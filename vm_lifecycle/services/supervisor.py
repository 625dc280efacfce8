"""Supervision of long-running background operations.

Each background operation runs on its own named daemon thread while holding an
:class:`OperationLease`. The lease is purely observational: it lets whoever
owns the process see which operations are still in flight before shutting
down. It never gates or serializes work.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from vm_lifecycle.db import session_scope
from vm_lifecycle.errors import ConvergenceTimeout, OperationCancelled
from vm_lifecycle.metrics import metrics
from vm_lifecycle.models import Operation, OperationState
from vm_lifecycle.repositories import create_operation, transition_operation


logger = logging.getLogger(__name__)

BackgroundWork = Callable[[threading.Event], None]


@dataclass
class TaskHandle:
    operation_id: str
    kind: str
    instance_id: str
    name: str
    error: BaseException | None = None
    state: str = OperationState.PENDING.value
    _finished: threading.Event = field(default_factory=threading.Event, repr=False)

    def done(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._finished.wait(timeout)


class OperationLease:
    def __init__(self, supervisor: "TaskSupervisor", handle: TaskHandle):
        self.supervisor = supervisor
        self.handle = handle
        self._held = False

    def acquire(self) -> "OperationLease":
        if not self._held:
            self.supervisor._register(self.handle)
            self._held = True
        return self

    def release(self) -> None:
        if self._held:
            self._held = False
            self.supervisor._unregister(self.handle)

    def __enter__(self) -> "OperationLease":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class TaskSupervisor:
    def __init__(self, *, inline: bool = False):
        self.inline = inline
        self.cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._live: dict[str, TaskHandle] = {}

    def _register(self, handle: TaskHandle) -> None:
        with self._lock:
            self._live[handle.operation_id] = handle
            metrics.set_gauge("operations_in_flight", len(self._live))

    def _unregister(self, handle: TaskHandle) -> None:
        with self._lock:
            self._live.pop(handle.operation_id, None)
            metrics.set_gauge("operations_in_flight", len(self._live))

    def active(self) -> list[TaskHandle]:
        with self._lock:
            return list(self._live.values())

    def outstanding(self) -> int:
        with self._lock:
            return len(self._live)

    def submit(self, kind: str, instance_id: str, work: BackgroundWork) -> TaskHandle:
        with session_scope() as session:
            operation = create_operation(session, kind, instance_id)
            operation_id = operation.operation_id
        handle = TaskHandle(
            operation_id=operation_id,
            kind=kind,
            instance_id=instance_id,
            name=f"{kind.lower()}-{instance_id}",
        )
        lease = OperationLease(self, handle).acquire()
        metrics.inc(f"operations_started_total.{kind.lower()}")
        if self.inline:
            self._run(lease, work)
            return handle

        thread = threading.Thread(
            target=self._run, args=(lease, work), name=handle.name, daemon=True
        )
        try:
            thread.start()
        except RuntimeError as exc:
            self._finish(handle, OperationState.FAILED.value, exc)
            lease.release()
            handle._finished.set()
            raise
        return handle

    def _run(self, lease: OperationLease, work: BackgroundWork) -> None:
        handle = lease.handle
        try:
            self._run_leased(lease, work)
        finally:
            handle._finished.set()

    def _run_leased(self, lease: OperationLease, work: BackgroundWork) -> None:
        handle = lease.handle
        with lease:
            self._mark(handle, OperationState.RUNNING.value)
            try:
                work(self.cancel_event)
            except OperationCancelled as exc:
                logger.warning("%s cancelled: %s", handle.name, exc)
                self._finish(handle, OperationState.CANCELLED.value, exc)
            except ConvergenceTimeout as exc:
                logger.error("%s timed out: %s", handle.name, exc)
                self._finish(handle, OperationState.TIMED_OUT.value, exc)
            except Exception as exc:  # noqa: BLE001
                logger.exception("%s failed: %s", handle.name, exc)
                self._finish(handle, OperationState.FAILED.value, exc)
            else:
                logger.info("%s completed", handle.name)
                self._finish(handle, OperationState.SUCCEEDED.value, None)

    def _mark(self, handle: TaskHandle, state: str, error: BaseException | None = None) -> None:
        handle.state = state
        try:
            with session_scope() as session:
                operation = session.get(Operation, handle.operation_id)
                if operation is not None:
                    transition_operation(
                        session, operation, state, str(error) if error else None
                    )
        except Exception:  # noqa: BLE001
            logger.exception("failed to journal %s -> %s", handle.operation_id, state)

    def _finish(self, handle: TaskHandle, state: str, error: BaseException | None) -> None:
        handle.error = error
        self._mark(handle, state, error)
        metrics.inc(f"operations_{state.lower()}_total")

    def wait_idle(self, timeout: float | None = None) -> bool:
        for handle in self.active():
            if not handle.wait(timeout):
                return False
        return self.outstanding() == 0

    def shutdown(self, grace_sec: float) -> int:
        """Cancel in-flight work and wait up to ``grace_sec`` for it to unwind.

        Returns the number of operations still holding a lease afterwards.
        """
        pending = self.active()
        if pending:
            logger.info("shutting down with %d operations in flight", len(pending))
        self.cancel_event.set()
        per_handle = grace_sec / len(pending) if pending else 0
        for handle in pending:
            handle.wait(per_handle)
        remaining = self.outstanding()
        if remaining:
            logger.warning("%d background operations still running at shutdown", remaining)
        return remaining
