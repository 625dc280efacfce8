"""Compact ``cpu:ram:[d1,d2,...]`` product descriptors.

The control plane identifies a machine shape by CPU count, RAM in MB and the
ordered list of attached disk sizes in GB. Disks can only be appended, one per
structural change, so :func:`diff` refuses anything that is not a single
tail-append.
"""

import re
from dataclasses import dataclass

from vm_lifecycle.errors import MalformedSpec, OutOfRange, UnsupportedDiskDelta


MIN_CPU = 1
MAX_CPU = 8
MIN_RAM_MB = 1
MAX_RAM_MB = 65536
ROOT_VOLUME_GB = 10
SUPPORTED_ARCHITECTURES = ("I64", "I32")

_NUMBER = re.compile(r"0|[1-9][0-9]*")


@dataclass(frozen=True)
class InstanceSpec:
    cpu_count: int
    ram_mb: int
    # None when the descriptor carries no disk segment ("cpu:ram").
    disk_sizes_gb: tuple[int, ...] | None = None

    def __str__(self) -> str:
        return serialize(self)


@dataclass(frozen=True)
class SpecDelta:
    cpu_changed: bool
    ram_changed: bool
    disk_append: tuple[int, ...] | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.cpu_changed or self.ram_changed or self.disk_append)


@dataclass(frozen=True)
class ProductDescriptor:
    product_id: str
    name: str
    description: str
    cpu_count: int
    ram_mb: int
    root_volume_gb: int
    architecture: str


def _parse_number(raw: str, segment: str, value: str) -> int:
    if not _NUMBER.fullmatch(value):
        raise MalformedSpec(raw, f"{segment} {value!r} is not a number")
    return int(value)


def parse(raw: str) -> InstanceSpec:
    if not isinstance(raw, str) or not raw:
        raise MalformedSpec(str(raw), "empty product string")
    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise MalformedSpec(raw, f"expected 2 or 3 segments, got {len(parts)}")
    cpu = _parse_number(raw, "cpu", parts[0])
    ram = _parse_number(raw, "ram", parts[1])
    if len(parts) == 2:
        return InstanceSpec(cpu_count=cpu, ram_mb=ram)

    disk_segment = parts[2]
    if not (disk_segment.startswith("[") and disk_segment.endswith("]")):
        raise MalformedSpec(raw, "disk segment must be bracketed")
    inner = disk_segment[1:-1]
    if not inner:
        return InstanceSpec(cpu_count=cpu, ram_mb=ram, disk_sizes_gb=())
    disks = tuple(_parse_number(raw, "disk", d) for d in inner.split(","))
    return InstanceSpec(cpu_count=cpu, ram_mb=ram, disk_sizes_gb=disks)


def serialize(spec: InstanceSpec) -> str:
    head = f"{spec.cpu_count}:{spec.ram_mb}"
    if spec.disk_sizes_gb is None:
        return head
    return f"{head}:[{','.join(str(d) for d in spec.disk_sizes_gb)}]"


def check_range(spec: InstanceSpec) -> None:
    if not MIN_CPU <= spec.cpu_count <= MAX_CPU:
        raise OutOfRange(
            field="cpu_count", value=spec.cpu_count, minimum=MIN_CPU, maximum=MAX_CPU
        )
    if not MIN_RAM_MB <= spec.ram_mb <= MAX_RAM_MB:
        raise OutOfRange(
            field="ram_mb", value=spec.ram_mb, minimum=MIN_RAM_MB, maximum=MAX_RAM_MB
        )


def diff(current: InstanceSpec, target: InstanceSpec) -> SpecDelta:
    check_range(target)
    disk_append = _disk_append(current.disk_sizes_gb, target.disk_sizes_gb)
    return SpecDelta(
        cpu_changed=current.cpu_count != target.cpu_count,
        ram_changed=current.ram_mb != target.ram_mb,
        disk_append=disk_append,
    )


def _disk_append(
    current: tuple[int, ...] | None, target: tuple[int, ...] | None
) -> tuple[int, ...] | None:
    if target is None:
        return None
    existing = current or ()
    if target == existing:
        return None
    if len(target) < len(existing):
        raise UnsupportedDiskDelta(existing, target, "disks cannot be removed")
    if target[: len(existing)] != existing:
        raise UnsupportedDiskDelta(
            existing, target, "attached disks cannot be resized or reordered"
        )
    appended = target[len(existing):]
    if len(appended) > 1:
        raise UnsupportedDiskDelta(
            existing, target, "only one disk can be added per operation"
        )
    if appended[0] <= 0:
        raise UnsupportedDiskDelta(existing, target, "disk size must be positive")
    return appended


def enumerate_products(
    architecture: str, max_cpu: int, max_ram_mb: int
) -> list[ProductDescriptor]:
    products: list[ProductDescriptor] = []
    for cpu in range(1, max_cpu + 1):
        ram_mb = 1024 if cpu <= 2 else 1024 * cpu
        while ram_mb // 1024 <= 4 * cpu and ram_mb <= max_ram_mb:
            label = f" ({cpu} CPU/{ram_mb} MB RAM)"
            products.append(
                ProductDescriptor(
                    product_id=f"{cpu}:{ram_mb}",
                    name=label,
                    description=label,
                    cpu_count=cpu,
                    ram_mb=ram_mb,
                    root_volume_gb=ROOT_VOLUME_GB,
                    architecture=architecture,
                )
            )
            ram_mb = ram_mb + 1024 if cpu <= 2 else ram_mb * 2
    return products
