"""Ordered teardown of a server.

Public addresses are released first, then the server is stopped, destroyed and
watched until it is gone. Each phase polls within its own deadline; only the
destroy phase can fail the call, and only for result codes that retrying
cannot fix.
"""

import logging
import threading
from enum import Enum

from vm_lifecycle.clients.catalog import AddressManager
from vm_lifecycle.clients.control_plane import (
    CLEAN,
    SHUTDOWN,
    CommandResult,
    ControlPlaneClient,
    server_ref,
)
from vm_lifecycle.convergence import ConvergenceWaiter
from vm_lifecycle.errors import (
    ConvergenceTimeout,
    FatalTerminationReason,
    OperationCancelled,
    RemoteCallFailed,
)
from vm_lifecycle.metrics import metrics
from vm_lifecycle.observation import InstanceObservation, LifecyclePhase
from vm_lifecycle.services.enumerator import InstanceEnumerator


logger = logging.getLogger(__name__)


class TerminationResultCode(str, Enum):
    SUCCESS = "Success"
    NOT_FOUND = "NotFound"
    UNAUTHORIZED = "Unauthorized"
    ATTACHED_TO_DEPENDENT = "AttachedToDependent"
    UNKNOWN = "Unknown"


WIRE_RESULT_CODES = {
    "REASON_0": TerminationResultCode.SUCCESS,
    "REASON_395": TerminationResultCode.NOT_FOUND,
    "REASON_100": TerminationResultCode.UNAUTHORIZED,
    "REASON_393": TerminationResultCode.ATTACHED_TO_DEPENDENT,
}

FATAL_RESULT_CODES = {
    TerminationResultCode.NOT_FOUND: "could not find server",
    TerminationResultCode.UNAUTHORIZED: "illegal access",
    TerminationResultCode.ATTACHED_TO_DEPENDENT: (
        "server is referenced by a load balancer real-server and must be detached first"
    ),
}


def classify_result_code(result: CommandResult) -> TerminationResultCode:
    if result.result_code is None:
        return TerminationResultCode.SUCCESS if result.success else TerminationResultCode.UNKNOWN
    return WIRE_RESULT_CODES.get(result.result_code, TerminationResultCode.UNKNOWN)


class TerminationOrchestrator:
    def __init__(
        self,
        client: ControlPlaneClient,
        enumerator: InstanceEnumerator,
        addresses: AddressManager,
        waiter: ConvergenceWaiter,
        *,
        poll_interval_sec: float = 30.0,
        stop_timeout_sec: float = 20 * 60,
        stopped_wait_timeout_sec: float = 10 * 60,
        destroy_timeout_sec: float = 10 * 60,
        destroy_backoff_sec: float = 30.0,
    ):
        self.client = client
        self.enumerator = enumerator
        self.addresses = addresses
        self.waiter = waiter
        self.poll_interval_sec = poll_interval_sec
        self.stop_timeout_sec = stop_timeout_sec
        self.stopped_wait_timeout_sec = stopped_wait_timeout_sec
        self.destroy_timeout_sec = destroy_timeout_sec
        self.destroy_backoff_sec = destroy_backoff_sec

    def terminate(self, instance_id: str, cancel_event: threading.Event | None = None) -> bool:
        """Tear ``instance_id`` down; returns True once it is confirmed gone.

        Raises :class:`FatalTerminationReason` when the control plane refuses
        the destroy for a reason that retrying cannot fix.
        """
        waiter = self.waiter.with_cancel_event(cancel_event) if cancel_event else self.waiter
        logger.info("beginning termination of %s", instance_id)

        server = self.enumerator.get(instance_id)
        logger.info(
            "current state for %s: %s",
            instance_id,
            server.phase.value if server else LifecyclePhase.TERMINATED.value,
        )
        if server is None:
            return True

        self._release_addresses(server)

        if not self._stop(instance_id, waiter):
            return True
        if not self._wait_stopped(instance_id, waiter):
            return True

        deadline = self._destroy(instance_id, waiter)
        return self._wait_terminated(instance_id, waiter, deadline)

    def _release_addresses(self, server: InstanceObservation) -> None:
        if not server.public_addresses:
            return
        logger.info(
            "releasing %d public addresses of %s prior to termination",
            len(server.public_addresses),
            server.instance_id,
        )
        for address_id in server.public_addresses:
            self.addresses.release(address_id)
            metrics.inc("addresses_released_total")

    def _stop(self, instance_id: str, waiter: ConvergenceWaiter) -> bool:
        """Returns False if the server disappeared while stopping it."""
        logger.info("stopping %s prior to termination", instance_id)
        stop_issued = False

        def refresh() -> InstanceObservation | None:
            nonlocal stop_issued
            server = self.enumerator.get(instance_id)
            if server is not None and server.phase == LifecyclePhase.RUNNING and not stop_issued:
                self.client.shutdown(instance_id).raise_for_failure(
                    SHUTDOWN, server_ref(instance_id)
                )
                stop_issued = True
            return server

        try:
            server = waiter.wait_until(
                lambda observed: stop_issued or observed.phase == LifecyclePhase.STOPPED,
                refresh,
                timeout=self.stop_timeout_sec,
                poll_interval=self.poll_interval_sec,
                description="stop before termination",
                resource=instance_id,
                accept_absent=True,
            )
        except ConvergenceTimeout as exc:
            logger.warning("%s; continuing with termination", exc)
            return True
        return server is not None

    def _wait_stopped(self, instance_id: str, waiter: ConvergenceWaiter) -> bool:
        """Returns False if the server is already gone."""
        logger.info("waiting for %s to be STOPPED", instance_id)
        try:
            server = waiter.wait_until(
                lambda observed: observed.phase
                in (LifecyclePhase.STOPPED, LifecyclePhase.TERMINATED),
                lambda: self.enumerator.get(instance_id),
                timeout=self.stopped_wait_timeout_sec,
                poll_interval=self.poll_interval_sec,
                description="STOPPED before destroy",
                resource=instance_id,
                accept_absent=True,
            )
        except ConvergenceTimeout as exc:
            logger.warning("%s; attempting destroy anyway", exc)
            return True
        if server is None or server.phase == LifecyclePhase.TERMINATED:
            logger.info("%s already terminated", instance_id)
            return False
        return True

    def _destroy(self, instance_id: str, waiter: ConvergenceWaiter) -> float:
        """Issue destroy until accepted; returns the phase deadline."""
        logger.info("destroying %s now that it is STOPPED", instance_id)
        deadline = waiter.clock() + self.destroy_timeout_sec
        attempts = 0
        while waiter.clock() < deadline:
            attempts += 1
            try:
                result = self.client.destroy(instance_id)
            except RemoteCallFailed as exc:
                logger.warning(
                    "failed termination attempt %d for %s: %s", attempts, instance_id, exc
                )
            else:
                code = classify_result_code(result)
                logger.debug(
                    "%s termination result: %s (%s)", instance_id, result.result_code, code.value
                )
                if code == TerminationResultCode.SUCCESS:
                    metrics.inc("terminations_total")
                    return deadline
                if code in FATAL_RESULT_CODES:
                    logger.error(
                        "%s: %s (%s)", instance_id, FATAL_RESULT_CODES[code], result.result_code
                    )
                    metrics.inc("terminations_refused_total")
                    raise FatalTerminationReason(
                        instance_id=instance_id,
                        code=code.value,
                        result_code=result.result_code,
                        detail=result.detail or FATAL_RESULT_CODES[code],
                    )
                logger.warning(
                    "termination attempt %d for %s returned %s: %s",
                    attempts,
                    instance_id,
                    result.result_code,
                    result.detail,
                )
            waiter.pause(self.destroy_backoff_sec, "destroy backoff")
            self._clean(instance_id)
        logger.error(
            "%s was not accepted for destroy within %gs", instance_id, self.destroy_timeout_sec
        )
        return deadline

    def _clean(self, instance_id: str) -> None:
        logger.info("cleaning failed deployment for %s", instance_id)
        try:
            self.client.clean(instance_id).raise_for_failure(CLEAN, server_ref(instance_id))
        except OperationCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("cleanup of %s failed: %s", instance_id, exc)

    def _wait_terminated(
        self, instance_id: str, waiter: ConvergenceWaiter, deadline: float
    ) -> bool:
        logger.info("waiting for %s to be TERMINATED", instance_id)
        try:
            waiter.wait_until(
                lambda observed: observed.phase == LifecyclePhase.TERMINATED,
                lambda: self.enumerator.get(instance_id),
                timeout=max(0.0, deadline - waiter.clock()),
                poll_interval=self.poll_interval_sec,
                description="termination",
                resource=instance_id,
                accept_absent=True,
            )
        except ConvergenceTimeout:
            logger.warning("timed out waiting for %s to complete termination", instance_id)
            return False
        logger.info("%s successfully TERMINATED", instance_id)
        return True
