"""Bounded-time polling against an eventually consistent control plane.

Every deadline is computed once at loop entry from the injected clock, so the
wall-clock bound holds no matter how slow individual remote calls are. A failed
refresh never aborts a loop: the error is logged, remembered and attached to
the :class:`ConvergenceTimeout` raised if the deadline passes.
"""

import logging
import threading
import time
from typing import Callable, TypeVar

from vm_lifecycle.errors import ConvergenceTimeout, OperationCancelled, ResourceVanished


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConvergenceWaiter:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.clock = clock
        self._sleep = sleep
        self.cancel_event = cancel_event

    def with_cancel_event(self, cancel_event: threading.Event) -> "ConvergenceWaiter":
        return ConvergenceWaiter(
            clock=self.clock, sleep=self._sleep, cancel_event=cancel_event
        )

    def pause(self, seconds: float, description: str = "waiting") -> None:
        """Suspend only the calling thread; wakes early if cancelled."""
        self.check_cancelled(description)
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        elif self.cancel_event is not None:
            self.cancel_event.wait(seconds)
        else:
            time.sleep(seconds)
        self.check_cancelled(description)

    def check_cancelled(self, description: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelled(description)

    def wait_until(
        self,
        predicate: Callable[[T], bool],
        refresh: Callable[[], T | None],
        *,
        timeout: float,
        poll_interval: float,
        description: str = "convergence",
        resource: str = "resource",
        accept_absent: bool = False,
    ) -> T | None:
        deadline = self.clock() + timeout
        attempts = 0
        last_error: Exception | None = None
        last_observation: T | None = None
        while True:
            attempts += 1
            try:
                observation = refresh()
                satisfied = observation is not None and predicate(observation)
            except OperationCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "poll %d for %s on %s failed: %s",
                    attempts,
                    description,
                    resource,
                    exc,
                )
            else:
                if observation is None:
                    if accept_absent:
                        logger.info(
                            "%s no longer present while waiting for %s", resource, description
                        )
                        return None
                    raise ResourceVanished(instance_id=resource, phase=description)
                if satisfied:
                    logger.debug(
                        "%s reached %s after %d polls", resource, description, attempts
                    )
                    return observation
                last_observation = observation

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ConvergenceTimeout(
                    description=f"{description} on {resource}",
                    timeout_sec=timeout,
                    attempts=attempts,
                    last_observation=last_observation,
                    last_error=last_error,
                )
            self.pause(min(poll_interval, remaining), description)

    def retry(
        self,
        action: Callable[[], bool],
        *,
        timeout: float,
        interval: float,
        description: str,
        resource: str = "resource",
    ) -> int:
        """Repeat ``action`` until it reports success; returns the attempt count."""
        deadline = self.clock() + timeout
        attempts = 0
        last_error: Exception | None = None
        while True:
            attempts += 1
            try:
                if action():
                    return attempts
                last_error = RuntimeError(f"{description} failed without explanation")
            except OperationCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "%s on %s failed (attempt %d): %s", description, resource, attempts, exc
                )
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ConvergenceTimeout(
                    description=f"{description} on {resource}",
                    timeout_sec=timeout,
                    attempts=attempts,
                    last_error=last_error,
                )
            self.pause(min(interval, remaining), description)
