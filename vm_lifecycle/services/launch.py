"""Launching servers from a template image.

Three paths, chosen by comparing the requested CPU/RAM with the image:

* the image already matches, so it is deployed started in one call;
* a pre-built variant image matches, so that variant is deployed instead;
* nothing matches, so the image is deployed stopped and a background
  operation resizes it and boots it. The caller gets the instance back as soon
  as the deploy is accepted; the background outcome lands in the journal.
"""

import dataclasses
import logging
import random
import threading

from vm_lifecycle.clients.catalog import (
    ImageCatalog,
    ImageDescriptor,
    NetworkResolver,
    RegionCatalog,
)
from vm_lifecycle.clients.control_plane import (
    DEPLOY,
    SERVER_BASE,
    START,
    ControlPlaneClient,
    server_ref,
)
from vm_lifecycle.convergence import ConvergenceWaiter
from vm_lifecycle.errors import (
    ConvergenceTimeout,
    ImageNotFound,
    MalformedSpec,
    ResourceVanished,
)
from vm_lifecycle.metrics import metrics
from vm_lifecycle.models import OperationKind
from vm_lifecycle.observation import InstanceObservation, LifecyclePhase
from vm_lifecycle.product import InstanceSpec, check_range, serialize
from vm_lifecycle.services.enumerator import InstanceEnumerator
from vm_lifecycle.services.reconfigure import ReconfigureEngine
from vm_lifecycle.services.supervisor import TaskHandle, TaskSupervisor


logger = logging.getLogger(__name__)

ALPHABET = "ABCEFGHJKMNPRSUVWXYZabcdefghjkmnpqrstuvwxyz0123456789#@()=+/{}[],.?;':|-_!$%^&*~`"
MIN_PASSWORD_LENGTH = 8
PASSWORD_BASE_LENGTH = 17
PASSWORD_LENGTH_SPREAD = 8

# (cpu, ram_mb) pairs the control plane ships pre-built images for.
NEAR_MATCH_VARIANTS = frozenset({(1, 2048), (2, 4096), (4, 6144)})


def generate_password(rng: random.Random) -> str:
    length = PASSWORD_BASE_LENGTH + rng.randrange(PASSWORD_LENGTH_SPREAD)
    return "".join(rng.choice(ALPHABET) for _ in range(length))


def choose_password(supplied: str | None, rng: random.Random) -> str:
    if supplied and len(supplied) >= MIN_PASSWORD_LENGTH:
        return supplied
    if supplied:
        logger.warning(
            "bootstrap password shorter than %d characters, generating one instead",
            MIN_PASSWORD_LENGTH,
        )
    return generate_password(rng)


@dataclasses.dataclass
class LaunchResult:
    instance: InstanceObservation
    branch: str
    background: TaskHandle | None = None


class LaunchOrchestrator:
    def __init__(
        self,
        client: ControlPlaneClient,
        images: ImageCatalog,
        networks: NetworkResolver,
        regions: RegionCatalog,
        enumerator: InstanceEnumerator,
        reconfigure: ReconfigureEngine,
        waiter: ConvergenceWaiter,
        supervisor: TaskSupervisor,
        *,
        default_vlan_id: str | None = None,
        boot_timeout_sec: float = 15 * 60,
        boot_poll_interval_sec: float = 15.0,
        rng: random.Random | None = None,
    ):
        self.client = client
        self.images = images
        self.networks = networks
        self.regions = regions
        self.enumerator = enumerator
        self.reconfigure = reconfigure
        self.waiter = waiter
        self.supervisor = supervisor
        self.default_vlan_id = default_vlan_id
        self.boot_timeout_sec = boot_timeout_sec
        self.boot_poll_interval_sec = boot_poll_interval_sec
        self.rng = rng or random.SystemRandom()

    def launch(
        self,
        spec: InstanceSpec,
        image_id: str,
        name: str,
        description: str,
        *,
        vlan_id: str | None = None,
        password: str | None = None,
        zone_id: str | None = None,
    ) -> LaunchResult:
        check_range(spec)
        if spec.disk_sizes_gb is not None:
            # The image decides the root volume; extra disks are added with alter.
            raise MalformedSpec(serialize(spec), "launch takes CPU:RAM without a disk segment")
        image = self.images.resolve(image_id)
        if image is None:
            raise ImageNotFound(image_id)

        vlan_id = vlan_id or self.default_vlan_id
        if not vlan_id:
            raise ValueError("no VLAN given and no default VLAN configured")
        zone_id = zone_id or self._default_zone()
        vlan_path = self.networks.resolve_vlan_path(vlan_id, zone_id)
        password = choose_password(password, self.rng)

        target = (spec.cpu_count, spec.ram_mb)
        logger.info(
            "launching %s from %s: requested %s/%s against image %s/%s",
            name,
            image.image_id,
            spec.cpu_count,
            spec.ram_mb,
            image.spec.cpu_count,
            image.spec.ram_mb,
        )

        if target == (image.spec.cpu_count, image.spec.ram_mb):
            instance = self._deploy_started(
                image, name, description, vlan_id, vlan_path, password, zone_id
            )
            metrics.inc("launch_exact_total")
            return LaunchResult(instance=instance, branch="exact")

        if target in NEAR_MATCH_VARIANTS:
            variant = self.images.find_variant(
                image.platform, image.architecture, spec.cpu_count, spec.ram_mb
            )
            if variant is not None:
                logger.info("using pre-built variant %s for %s", variant.image_id, name)
                instance = self._deploy_started(
                    variant, name, description, vlan_id, vlan_path, password, zone_id
                )
                metrics.inc("launch_variant_total")
                return LaunchResult(instance=instance, branch="variant")
            logger.info(
                "no pre-built %s/%s variant of %s", spec.cpu_count, spec.ram_mb, image.image_id
            )

        logger.info("%s needs modification after deployment, deploying stopped", name)
        self._deploy(image, name, description, vlan_path, password, zone_id, start=False)
        instance = self._resolve(name, vlan_id, password)
        handle = self.supervisor.submit(
            OperationKind.LAUNCH_CONFIGURE.value,
            instance.instance_id,
            lambda cancel: self.configure(name, vlan_id, spec, cancel),
        )
        metrics.inc("launch_multistep_total")
        return LaunchResult(instance=instance, branch="multistep", background=handle)

    def _default_zone(self) -> str:
        regions = self.regions.list_regions()
        if not regions:
            raise ValueError("no zone given and the control plane reports no regions")
        return regions[0].region_id

    def _deploy(
        self,
        image: ImageDescriptor,
        name: str,
        description: str,
        vlan_path: str,
        password: str,
        zone_id: str,
        *,
        start: bool,
    ) -> None:
        self.client.deploy(
            name=name,
            description=description,
            vlan_path=vlan_path,
            image_path=self.images.resource_path(image.image_id),
            administrator_password=password,
            start=start,
            location=zone_id,
        ).raise_for_failure(DEPLOY, SERVER_BASE)

    def _deploy_started(
        self,
        image: ImageDescriptor,
        name: str,
        description: str,
        vlan_id: str,
        vlan_path: str,
        password: str,
        zone_id: str,
    ) -> InstanceObservation:
        self._deploy(image, name, description, vlan_path, password, zone_id, start=True)
        return self._resolve(name, vlan_id, password)

    def _resolve(self, name: str, vlan_id: str, password: str) -> InstanceObservation:
        # Deploy does not return an id; the new server is found by name on its VLAN.
        instance = self.enumerator.find_by_name_and_vlan(name, vlan_id)
        if instance is None:
            raise ResourceVanished(
                instance_id=name,
                phase="launch",
                detail=f"not found on vlan {vlan_id} after deploy",
            )
        return dataclasses.replace(instance, root_password=password)

    def configure(
        self,
        name: str,
        vlan_id: str,
        target: InstanceSpec,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Resize a freshly deployed server to ``target`` and boot it."""
        waiter = self.waiter.with_cancel_event(cancel_event) if cancel_event else self.waiter

        server = self.enumerator.find_by_name_and_vlan(name, vlan_id)
        if server is None:
            raise ResourceVanished(
                instance_id=name, phase="configure", detail="disappeared after deployment"
            )
        logger.info("configuring %s [#%s] - %s", name, server.instance_id, server.phase.value)

        current = server.spec
        if current is None or (current.cpu_count, current.ram_mb) != (
            target.cpu_count,
            target.ram_mb,
        ):
            try:
                attempts = self.reconfigure.resize(
                    server.instance_id, target.cpu_count, target.ram_mb, waiter=waiter
                )
                logger.info(
                    "modification of %s succeeded after %d attempts", server.instance_id, attempts
                )
            except ConvergenceTimeout as exc:
                logger.error("%s could not be modified: %s", server.instance_id, exc)
        self.boot(name, vlan_id, waiter=waiter)

    def boot(
        self, name: str, vlan_id: str, *, waiter: ConvergenceWaiter | None = None
    ) -> InstanceObservation:
        waiter = waiter or self.waiter
        logger.info("booting %s", name)

        def refresh() -> InstanceObservation | None:
            server = self.enumerator.find_by_name_and_vlan(name, vlan_id)
            if server is not None and server.phase == LifecyclePhase.STOPPED:
                self.client.start(server.instance_id).raise_for_failure(
                    START, server_ref(server.instance_id)
                )
            return server

        server = waiter.wait_until(
            lambda observed: observed.phase == LifecyclePhase.RUNNING,
            refresh,
            timeout=self.boot_timeout_sec,
            poll_interval=self.boot_poll_interval_sec,
            description="boot",
            resource=name,
        )
        logger.info("%s is now RUNNING", name)
        return server
