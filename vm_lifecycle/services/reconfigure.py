import logging
import threading

from vm_lifecycle.clients.control_plane import (
    ADD_LOCAL_STORAGE,
    MODIFY,
    ControlPlaneClient,
    server_ref,
)
from vm_lifecycle.convergence import ConvergenceWaiter
from vm_lifecycle.errors import ConvergenceTimeout, ResourceVanished
from vm_lifecycle.metrics import metrics
from vm_lifecycle.models import OperationKind
from vm_lifecycle.observation import InstanceObservation
from vm_lifecycle.product import InstanceSpec, diff
from vm_lifecycle.services.enumerator import InstanceEnumerator
from vm_lifecycle.services.supervisor import TaskSupervisor


logger = logging.getLogger(__name__)


class ReconfigureEngine:
    """Applies CPU/RAM/disk deltas to an existing server.

    The control plane accepts one structural change per call, so a compound
    target is split: one combined CPU/RAM modify carrying only the changed
    fields, then a separate retried storage append. Storage growth runs as a
    supervised background operation when a supervisor is configured.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        enumerator: InstanceEnumerator,
        waiter: ConvergenceWaiter,
        *,
        retry_interval_sec: float = 30.0,
        storage_timeout_sec: float = 20 * 60,
        resize_timeout_sec: float = 90 * 60,
        supervisor: TaskSupervisor | None = None,
    ):
        self.client = client
        self.enumerator = enumerator
        self.waiter = waiter
        self.retry_interval_sec = retry_interval_sec
        self.storage_timeout_sec = storage_timeout_sec
        self.resize_timeout_sec = resize_timeout_sec
        self.supervisor = supervisor

    def apply(
        self, instance_id: str, current: InstanceSpec, target: InstanceSpec
    ) -> InstanceObservation:
        delta = diff(current, target)
        if delta.is_empty:
            logger.info("%s already matches %s", instance_id, target)

        if delta.cpu_changed or delta.ram_changed:
            logger.info(
                "modifying %s cpu %s->%s ram %s->%s",
                instance_id,
                current.cpu_count,
                target.cpu_count,
                current.ram_mb,
                target.ram_mb,
            )
            self.client.modify(
                instance_id,
                cpu_count=target.cpu_count if delta.cpu_changed else None,
                memory_mb=target.ram_mb if delta.ram_changed else None,
            ).raise_for_failure(MODIFY, server_ref(instance_id))
            metrics.inc("resize_requests_total")

        if delta.disk_append:
            size_gb = delta.disk_append[0]
            if self.supervisor is not None:
                self.supervisor.submit(
                    OperationKind.ALTER_STORAGE.value,
                    instance_id,
                    lambda cancel: self._grow_in_background(instance_id, size_gb, cancel),
                )
            else:
                self.grow_storage(instance_id, size_gb)

        observation = self.enumerator.get(instance_id)
        if observation is None:
            raise ResourceVanished(instance_id=instance_id, phase="alter")
        return observation

    def _grow_in_background(
        self, instance_id: str, size_gb: int, cancel_event: threading.Event
    ) -> None:
        self.grow_storage(
            instance_id,
            size_gb,
            waiter=self.waiter.with_cancel_event(cancel_event),
            raise_on_timeout=True,
        )

    def grow_storage(
        self,
        instance_id: str,
        size_gb: int,
        *,
        waiter: ConvergenceWaiter | None = None,
        raise_on_timeout: bool = False,
    ) -> bool:
        waiter = waiter or self.waiter

        def add_storage() -> bool:
            self.client.add_local_storage(instance_id, size_gb).raise_for_failure(
                ADD_LOCAL_STORAGE, server_ref(instance_id)
            )
            return True

        try:
            attempts = waiter.retry(
                add_storage,
                timeout=self.storage_timeout_sec,
                interval=self.retry_interval_sec,
                description="adding local storage",
                resource=instance_id,
            )
        except ConvergenceTimeout as exc:
            logger.error(
                "%s could not be given a %d GB disk: %s; CPU/RAM changes were kept",
                instance_id,
                size_gb,
                exc,
            )
            metrics.inc("storage_growth_failed_total")
            if raise_on_timeout:
                raise
            return False
        logger.info("added %d GB disk to %s after %d attempts", size_gb, instance_id, attempts)
        return True

    def resize(
        self,
        instance_id: str,
        cpu_count: int,
        ram_mb: int,
        *,
        waiter: ConvergenceWaiter | None = None,
    ) -> int:
        """Retry a full CPU/RAM modify until accepted; raises ConvergenceTimeout."""
        waiter = waiter or self.waiter

        def modify() -> bool:
            result = self.client.modify(instance_id, cpu_count=cpu_count, memory_mb=ram_mb)
            if not result.success:
                logger.warning(
                    "modify of %s rejected (result_code=%s): %s",
                    instance_id,
                    result.result_code,
                    result.detail,
                )
            return result.success

        return waiter.retry(
            modify,
            timeout=self.resize_timeout_sec,
            interval=self.retry_interval_sec,
            description="modifying CPU and memory",
            resource=instance_id,
        )
