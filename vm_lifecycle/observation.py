"""Canonical view of a server as reported by the control plane.

The control plane answers in one of three payload shapes depending on which
listing produced it: ``pending`` (deployment still in flight), ``deployed``
(legacy deployed-server listing) and ``with_state`` (the current listing,
carrying an explicit lifecycle state). :func:`decode_observation` converges
all of them into a single :class:`InstanceObservation`.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable

from vm_lifecycle.product import InstanceSpec, serialize


logger = logging.getLogger(__name__)


class LifecyclePhase(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    REBOOTING = "REBOOTING"
    TERMINATED = "TERMINATED"
    SUSPENDED = "SUSPENDED"


SHAPE_PENDING = "pending"
SHAPE_DEPLOYED = "deployed"
SHAPE_WITH_STATE = "with_state"

HEALTHY_SERVER_STATES = {"NORMAL", "PENDING_ADD", "PENDING_CHANGE", "PENDING_DELETE"}
PENDING_CHANGE_ACTIONS = {
    "START_SERVER": LifecyclePhase.RUNNING,
    "SHUTDOWN_SERVER": LifecyclePhase.STOPPING,
    "POWER_OFF_SERVER": LifecyclePhase.STOPPING,
    "RESET_SERVER": LifecyclePhase.REBOOTING,
}


@dataclass(frozen=True)
class InstanceObservation:
    instance_id: str
    name: str
    phase: LifecyclePhase
    region_id: str | None = None
    datacenter_id: str | None = None
    vlan_id: str | None = None
    description: str | None = None
    image_id: str | None = None
    platform: str = "UNKNOWN"
    architecture: str = "I64"
    tags: dict[str, str] = field(default_factory=dict)
    public_addresses: tuple[str, ...] = ()
    private_addresses: tuple[str, ...] = ()
    created_at: datetime | None = None
    spec: InstanceSpec | None = None
    root_password: str | None = field(default=None, repr=False, compare=False)

    @property
    def product_id(self) -> str:
        return serialize(self.spec) if self.spec else "unknown"

    @property
    def failure_reason(self) -> str | None:
        return self.tags.get("failureReason")


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _flag(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ``2012-05-08T02:23:16.999Z``; fractional seconds are dropped."""
    text = _text(value)
    if text is None:
        return None
    if "." in text:
        text = text[: text.index(".")] + "Z"
    try:
        parsed = datetime.strptime(text, "%Y-%m-%dT%H:%M:%SZ")
    except ValueError:
        logger.warning("invalid timestamp %r", value)
        return None
    return parsed.replace(tzinfo=UTC)


def guess_architecture(os_display_name: str | None) -> str | None:
    if not os_display_name:
        return None
    if "64" in os_display_name:
        return "I64"
    if "32" in os_display_name:
        return "I32"
    return None


def guess_platform(os_display_name: str | None) -> str:
    if not os_display_name:
        return "UNKNOWN"
    upper = os_display_name.upper()
    if "WIN" in upper:
        return "WINDOWS"
    for marker, platform in (
        ("UBUNTU", "UBUNTU"),
        ("CENTOS", "CENTOS"),
        ("RED HAT", "RHEL"),
        ("REDHAT", "RHEL"),
        ("RHEL", "RHEL"),
        ("DEBIAN", "DEBIAN"),
        ("SUSE", "SUSE"),
        ("FREEBSD", "FREE_BSD"),
        ("SOLARIS", "SOLARIS"),
    ):
        if marker in upper:
            return platform
    return "UNIX"


def _spec_from_tags(tags: dict[str, str], disks: list[int]) -> InstanceSpec | None:
    cpu = tags.get("cpuCount")
    memory = tags.get("memory")
    if cpu is None or memory is None:
        return None
    try:
        return InstanceSpec(
            cpu_count=int(cpu),
            ram_mb=int(memory),
            disk_sizes_gb=tuple(disks),
        )
    except ValueError:
        logger.warning("unparseable machine tags cpuCount=%r memory=%r", cpu, memory)
        return None


def _decode_with_state(payload: dict) -> InstanceObservation:
    instance_id = _text(payload.get("id")) or ""
    tags: dict[str, str] = {}
    disks_by_scsi: dict[int, int] = {}

    os_name = _text((payload.get("operatingSystem") or {}).get("displayName"))
    if payload.get("cpuCount") is not None:
        tags["cpuCount"] = str(payload["cpuCount"])
    if payload.get("memoryMb") is not None:
        tags["memory"] = str(payload["memoryMb"])
    for disk in payload.get("disks") or []:
        try:
            scsi_id = int(disk["scsiId"])
            size_gb = int(disk["sizeGb"])
        except (KeyError, TypeError, ValueError):
            logger.warning("skipping malformed disk entry %r on %s", disk, instance_id)
            continue
        disks_by_scsi[scsi_id] = size_gb
        if scsi_id == 0:
            tags["osStorage"] = str(size_gb)
        else:
            tags[f"additionalLocalStorage{scsi_id}"] = str(size_gb)

    is_deployed = bool(_flag(payload.get("isDeployed")))
    is_started = _flag(payload.get("isStarted"))
    server_state = _text(payload.get("state")) or ""
    status = payload.get("status") or {}

    phase = LifecyclePhase.PENDING
    if is_started is True:
        phase = LifecyclePhase.RUNNING
    elif is_started is False:
        phase = LifecyclePhase.STOPPED

    if server_state == "DELETED":
        phase = LifecyclePhase.TERMINATED
    elif not is_deployed and server_state == "PENDING_ADD":
        phase = LifecyclePhase.PENDING
    elif is_deployed and server_state == "PENDING_CHANGE":
        action = (_text(status.get("action")) or "").upper()
        phase = PENDING_CHANGE_ACTIONS.get(action, LifecyclePhase.PENDING)
    elif server_state and server_state not in HEALTHY_SERVER_STATES:
        phase = LifecyclePhase.SUSPENDED
        failure_reason = _text(status.get("failureReason"))
        if failure_reason:
            tags["serverState"] = server_state
            tags["failureReason"] = failure_reason

    disks = [disks_by_scsi[k] for k in sorted(disks_by_scsi)]
    region_id = _text(payload.get("location"))
    name = _text(payload.get("name")) or instance_id
    return InstanceObservation(
        instance_id=instance_id,
        name=name,
        description=_text(payload.get("description")) or name,
        phase=phase,
        region_id=region_id,
        datacenter_id=region_id,
        vlan_id=_text(payload.get("networkId")),
        image_id=_text(payload.get("sourceImageId")),
        platform=guess_platform(os_name),
        architecture=guess_architecture(os_name) or "I64",
        tags=tags,
        public_addresses=tuple(a for a in [_text(payload.get("publicIp"))] if a),
        private_addresses=tuple(a for a in [_text(payload.get("privateIp"))] if a),
        created_at=parse_timestamp(payload.get("created")),
        spec=_spec_from_tags(tags, disks),
    )


def _machine_tags(spec: dict) -> tuple[dict[str, str], list[int], str | None]:
    tags: dict[str, str] = {}
    disks: list[int] = []
    os_name = _text((spec.get("operatingSystem") or {}).get("displayName"))
    cpu = spec.get("cpuCount")
    memory = spec.get("memoryMb", spec.get("memory"))
    os_storage = spec.get("osStorageGb", spec.get("osStorage"))
    extra_storage = spec.get("additionalLocalStorageGb", spec.get("additionalLocalStorage"))
    if cpu is not None:
        tags["cpuCount"] = str(cpu)
    if memory is not None:
        tags["memory"] = str(memory)
    if os_storage is not None:
        tags["osStorage"] = str(os_storage)
        disks.append(int(os_storage))
    if extra_storage:
        tags["additionalLocalStorage"] = str(extra_storage)
        disks.append(int(extra_storage))
    return tags, disks, os_name


def _decode_legacy(payload: dict, pending: bool) -> InstanceObservation:
    instance_id = _text(payload.get("id")) or ""
    tags, disks, os_name = _machine_tags(payload.get("machineSpecification") or {})
    if pending:
        phase = LifecyclePhase.PENDING
        created = parse_timestamp((payload.get("status") or {}).get("requestTime"))
    else:
        phase = (
            LifecyclePhase.STOPPED
            if _flag(payload.get("isStarted")) is False
            else LifecyclePhase.RUNNING
        )
        if _flag(payload.get("isDeployed")) is False:
            phase = LifecyclePhase.PENDING
        created = parse_timestamp(payload.get("created"))
    public = _text(payload.get("publicIpAddress"))
    private = _text(payload.get("privateIpAddress"))
    region_id = _text(payload.get("location"))
    name = _text(payload.get("name")) or instance_id
    platform = guess_platform(os_name)
    return InstanceObservation(
        instance_id=instance_id,
        name=name,
        description=_text(payload.get("description")) or name,
        phase=phase,
        region_id=region_id,
        datacenter_id=region_id,
        vlan_id=_text(payload.get("networkId")),
        image_id=_text(payload.get("sourceImageId")),
        platform="UNIX" if platform == "UNKNOWN" and os_name else platform,
        architecture=guess_architecture(os_name) or "I64",
        tags=tags,
        public_addresses=(public,) if public else (),
        private_addresses=(private,) if private else (),
        created_at=created,
        spec=_spec_from_tags(tags, disks),
    )


_DECODERS: dict[str, Callable[[dict], InstanceObservation]] = {
    SHAPE_WITH_STATE: _decode_with_state,
    SHAPE_PENDING: lambda payload: _decode_legacy(payload, pending=True),
    SHAPE_DEPLOYED: lambda payload: _decode_legacy(payload, pending=False),
}


def detect_shape(payload: dict) -> str:
    shape = payload.get("shape")
    if shape in _DECODERS:
        return shape
    if "state" in payload or "disks" in payload:
        return SHAPE_WITH_STATE
    if "step" in (payload.get("status") or {}):
        return SHAPE_PENDING
    return SHAPE_DEPLOYED


def decode_observation(payload: dict | None) -> InstanceObservation | None:
    if not payload or not _text(payload.get("id")):
        return None
    return _DECODERS[detect_shape(payload)](payload)
