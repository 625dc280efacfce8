import logging
import random
from typing import Iterator

from sqlalchemy.orm import Session

from vm_lifecycle.clients.catalog import (
    AddressManager,
    ControlPlaneAddressManager,
    ControlPlaneImageCatalog,
    ControlPlaneNetworkResolver,
    ControlPlaneRegionCatalog,
    ImageCatalog,
    NetworkResolver,
    ProductCache,
    RegionCatalog,
    TTLProductCache,
)
from vm_lifecycle.clients.control_plane import (
    POWER_OFF,
    REBOOT,
    SHUTDOWN,
    START,
    ControlPlaneClient,
    server_ref,
)
from vm_lifecycle.clients.http import RetryPolicy
from vm_lifecycle.config import Settings, get_settings
from vm_lifecycle.convergence import ConvergenceWaiter
from vm_lifecycle.db import session_scope
from vm_lifecycle.errors import ResourceVanished
from vm_lifecycle.models import Operation, OperationKind
from vm_lifecycle.observation import InstanceObservation, LifecyclePhase
from vm_lifecycle.product import (
    SUPPORTED_ARCHITECTURES,
    InstanceSpec,
    ProductDescriptor,
    check_range,
    enumerate_products,
    parse,
)
from vm_lifecycle.repositories import list_operations
from vm_lifecycle.services.enumerator import InstanceEnumerator
from vm_lifecycle.services.launch import LaunchOrchestrator, LaunchResult
from vm_lifecycle.services.reconfigure import ReconfigureEngine
from vm_lifecycle.services.supervisor import TaskHandle, TaskSupervisor
from vm_lifecycle.services.terminate import TerminationOrchestrator


logger = logging.getLogger(__name__)


def _as_spec(value: str | InstanceSpec) -> InstanceSpec:
    return parse(value) if isinstance(value, str) else value


class VirtualMachineService:
    """Caller-facing lifecycle operations for one region and account.

    Wires the orchestrators to one control plane client and one background
    supervisor. Timeouts come from settings; tests pass a waiter with a fake
    clock and sleep instead of shrinking them.
    """

    def __init__(
        self,
        settings: Settings,
        client: ControlPlaneClient,
        *,
        images: ImageCatalog | None = None,
        networks: NetworkResolver | None = None,
        addresses: AddressManager | None = None,
        regions: RegionCatalog | None = None,
        product_cache: ProductCache | None = None,
        supervisor: TaskSupervisor | None = None,
        waiter: ConvergenceWaiter | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings
        self.client = client
        self.images = images or ControlPlaneImageCatalog(client)
        self.networks = networks or ControlPlaneNetworkResolver(client)
        self.addresses = addresses or ControlPlaneAddressManager(client)
        self.regions = regions or ControlPlaneRegionCatalog(client)
        self.product_cache = product_cache or TTLProductCache(settings.product_cache_ttl_sec)
        self.supervisor = supervisor or TaskSupervisor(inline=settings.disable_background_tasks)
        self.waiter = waiter or ConvergenceWaiter()

        self.enumerator = InstanceEnumerator(client, settings.region_id, settings.page_size)
        self.reconfigure = ReconfigureEngine(
            client,
            self.enumerator,
            self.waiter,
            retry_interval_sec=settings.poll_interval_sec,
            storage_timeout_sec=settings.storage_timeout_sec,
            resize_timeout_sec=settings.resize_timeout_sec,
            supervisor=self.supervisor,
        )
        self.launcher = LaunchOrchestrator(
            client,
            self.images,
            self.networks,
            self.regions,
            self.enumerator,
            self.reconfigure,
            self.waiter,
            self.supervisor,
            default_vlan_id=settings.default_vlan_id,
            boot_timeout_sec=settings.boot_timeout_sec,
            boot_poll_interval_sec=settings.boot_poll_interval_sec,
            rng=rng,
        )
        self.terminator = TerminationOrchestrator(
            client,
            self.enumerator,
            self.addresses,
            self.waiter,
            poll_interval_sec=settings.poll_interval_sec,
            stop_timeout_sec=settings.stop_timeout_sec,
            stopped_wait_timeout_sec=settings.stopped_wait_timeout_sec,
            destroy_timeout_sec=settings.destroy_timeout_sec,
            destroy_backoff_sec=settings.destroy_backoff_sec,
        )

    def close(self) -> int:
        remaining = self.supervisor.shutdown(self.settings.shutdown_grace_sec)
        self.client.close()
        return remaining

    # launch / alter / terminate

    def start_launch(
        self,
        spec: str | InstanceSpec,
        image_id: str,
        name: str,
        description: str,
        *,
        vlan_id: str | None = None,
        password: str | None = None,
        zone_id: str | None = None,
    ) -> LaunchResult:
        return self.launcher.launch(
            _as_spec(spec),
            image_id,
            name,
            description,
            vlan_id=vlan_id,
            password=password,
            zone_id=zone_id,
        )

    def launch(
        self,
        spec: str | InstanceSpec,
        image_id: str,
        name: str,
        description: str,
        *,
        vlan_id: str | None = None,
        password: str | None = None,
        zone_id: str | None = None,
    ) -> InstanceObservation:
        return self.start_launch(
            spec,
            image_id,
            name,
            description,
            vlan_id=vlan_id,
            password=password,
            zone_id=zone_id,
        ).instance

    def alter(self, instance_id: str, target: str | InstanceSpec) -> InstanceObservation:
        target_spec = _as_spec(target)
        check_range(target_spec)
        server = self.enumerator.get(instance_id)
        if server is None:
            raise ResourceVanished(instance_id=instance_id, phase="alter")
        # A server that reports no size is resized in full.
        current = server.spec or InstanceSpec(cpu_count=0, ram_mb=0)
        return self.reconfigure.apply(instance_id, current, target_spec)

    def terminate(self, instance_id: str) -> bool:
        return self.terminator.terminate(instance_id)

    def submit_termination(self, instance_id: str) -> TaskHandle:
        return self.supervisor.submit(
            OperationKind.TERMINATE.value,
            instance_id,
            lambda cancel: self._terminate_in_background(instance_id, cancel),
        )

    def _terminate_in_background(self, instance_id: str, cancel_event) -> None:
        self.terminator.terminate(instance_id, cancel_event)

    # power

    def start(self, instance_id: str) -> None:
        self.client.start(instance_id).raise_for_failure(START, server_ref(instance_id))

    def stop(self, instance_id: str, hard: bool = False) -> None:
        if hard:
            self.client.power_off(instance_id).raise_for_failure(
                POWER_OFF, server_ref(instance_id)
            )
        else:
            self.client.shutdown(instance_id).raise_for_failure(
                SHUTDOWN, server_ref(instance_id)
            )

    def reboot(self, instance_id: str) -> None:
        self.client.reboot(instance_id).raise_for_failure(REBOOT, server_ref(instance_id))

    # reads

    def list_instances(self) -> Iterator[InstanceObservation]:
        return self.enumerator.list_instances()

    def list_statuses(self) -> list[tuple[str, LifecyclePhase]]:
        return [(server.instance_id, server.phase) for server in self.enumerator.list_instances()]

    def get(self, instance_id: str) -> InstanceObservation | None:
        return self.enumerator.get(instance_id)

    def find_by_name_and_vlan(self, name: str, vlan_id: str) -> InstanceObservation | None:
        return self.enumerator.find_by_name_and_vlan(name, vlan_id)

    def list_products(self, architecture: str) -> list[ProductDescriptor]:
        architecture = architecture.upper()
        if architecture not in SUPPORTED_ARCHITECTURES:
            raise ValueError(
                f"unsupported architecture {architecture!r}, expected one of "
                f"{', '.join(SUPPORTED_ARCHITECTURES)}"
            )
        key = f"{self.settings.region_id}:{self.settings.control_plane_user}:{architecture}"
        cached = self.product_cache.get(key)
        if cached is not None:
            return cached
        limits = self.regions.compute_limits(self.settings.region_id)
        products = enumerate_products(architecture, limits.max_cpu, limits.max_ram_mb)
        self.product_cache.put(key, products)
        logger.info("enumerated %d %s products for %s", len(products), architecture, key)
        return products

    def get_product(self, product_id: str) -> ProductDescriptor | None:
        for architecture in SUPPORTED_ARCHITECTURES:
            for product in self.list_products(architecture):
                if product.product_id == product_id:
                    return product
        return None

    def operations(
        self, instance_id: str | None = None, state: str | None = None
    ) -> list[Operation]:
        with session_scope() as session:
            return _detached(session, list_operations(session, instance_id, state))


def _detached(session: Session, operations: list[Operation]) -> list[Operation]:
    for operation in operations:
        session.expunge(operation)
    return operations


def build_service(settings: Settings | None = None) -> VirtualMachineService:
    settings = settings or get_settings()
    client = ControlPlaneClient(
        settings.control_plane_url,
        settings.control_plane_user,
        settings.control_plane_password,
        RetryPolicy(attempts=settings.retry_attempts, sleep_sec=settings.retry_sleep_sec),
        timeout=settings.request_timeout_sec,
    )
    return VirtualMachineService(settings, client)
