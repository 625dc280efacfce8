"""Collaborators the orchestration core consumes but does not own.

The protocols describe what the core needs; the ``ControlPlane*`` classes are
thin adapters that answer them through the same command primitive. Static
catalog caching, IP allocation and VLAN bookkeeping live behind these seams.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Protocol

from vm_lifecycle.clients.control_plane import ControlPlaneClient
from vm_lifecycle.product import InstanceSpec, ProductDescriptor


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageDescriptor:
    image_id: str
    spec: InstanceSpec
    platform: str
    architecture: str


@dataclass(frozen=True)
class Region:
    region_id: str
    name: str


@dataclass(frozen=True)
class ComputeLimits:
    max_cpu: int
    max_ram_mb: int


class ImageCatalog(Protocol):
    def resolve(self, image_id: str) -> ImageDescriptor | None: ...

    def find_variant(
        self, platform: str, architecture: str, cpu_count: int, ram_mb: int
    ) -> ImageDescriptor | None: ...

    def resource_path(self, image_id: str) -> str: ...


class NetworkResolver(Protocol):
    def resolve_vlan_path(self, vlan_id: str, region_id: str) -> str: ...


class AddressManager(Protocol):
    def release(self, address_id: str) -> None: ...


class RegionCatalog(Protocol):
    def list_regions(self) -> list[Region]: ...

    def compute_limits(self, region_id: str) -> ComputeLimits: ...


class ProductCache(Protocol):
    def get(self, key: str) -> list[ProductDescriptor] | None: ...

    def put(self, key: str, products: list[ProductDescriptor]) -> None: ...


def _image_from_payload(payload: dict) -> ImageDescriptor:
    return ImageDescriptor(
        image_id=str(payload["id"]),
        spec=InstanceSpec(
            cpu_count=int(payload.get("cpuCount") or 0),
            ram_mb=int(payload.get("memory") or 0),
        ),
        platform=str(payload.get("platform") or "UNKNOWN"),
        architecture=str(payload.get("architecture") or "I64"),
    )


class ControlPlaneImageCatalog:
    def __init__(self, client: ControlPlaneClient):
        self.client = client

    def resolve(self, image_id: str) -> ImageDescriptor | None:
        result = self.client.invoke("get", f"image/{image_id}")
        if not result.success or not result.data:
            return None
        return _image_from_payload(result.data)

    def find_variant(
        self, platform: str, architecture: str, cpu_count: int, ram_mb: int
    ) -> ImageDescriptor | None:
        result = self.client.invoke(
            "search",
            "image",
            {
                "platform": platform,
                "architecture": architecture,
                "cpuCount": cpu_count,
                "memory": ram_mb,
            },
        )
        if not result.success or not result.data:
            return None
        return _image_from_payload(result.data)

    def resource_path(self, image_id: str) -> str:
        return f"/image/{image_id}"


class ControlPlaneNetworkResolver:
    def __init__(self, client: ControlPlaneClient):
        self.client = client

    def resolve_vlan_path(self, vlan_id: str, region_id: str) -> str:
        result = self.client.invoke(
            "get", f"network/{vlan_id}", {"location": region_id}
        ).raise_for_failure("get", f"network/{vlan_id}")
        return str((result.data or {}).get("resourcePath") or f"/network/{vlan_id}")


class ControlPlaneAddressManager:
    def __init__(self, client: ControlPlaneClient):
        self.client = client

    def release(self, address_id: str) -> None:
        self.client.invoke("release", f"address/{address_id}").raise_for_failure(
            "release", f"address/{address_id}"
        )


class ControlPlaneRegionCatalog:
    def __init__(self, client: ControlPlaneClient):
        self.client = client

    def list_regions(self) -> list[Region]:
        return [
            Region(region_id=str(dc["location"]), name=str(dc.get("displayName") or dc["location"]))
            for dc in self.client.datacenters_with_limits()
        ]

    def compute_limits(self, region_id: str) -> ComputeLimits:
        for dc in self.client.datacenters_with_limits():
            if str(dc.get("location")) == region_id:
                return ComputeLimits(
                    max_cpu=int(dc.get("maxCpu") or 0),
                    max_ram_mb=int(dc.get("maxRamMb") or 0),
                )
        logger.warning("no compute limits reported for region %s", region_id)
        return ComputeLimits(max_cpu=0, max_ram_mb=0)


class TTLProductCache:
    def __init__(self, ttl_sec: float, clock=time.monotonic):
        self.ttl_sec = ttl_sec
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, list[ProductDescriptor]]] = {}

    def get(self, key: str) -> list[ProductDescriptor] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, products = entry
            if self.clock() - stored_at > self.ttl_sec:
                del self._entries[key]
                return None
            return list(products)

    def put(self, key: str, products: list[ProductDescriptor]) -> None:
        with self._lock:
            self._entries[key] = (self.clock(), list(products))
