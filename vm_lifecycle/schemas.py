from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from vm_lifecycle.observation import InstanceObservation
from vm_lifecycle.product import ProductDescriptor


class LaunchRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    image_id: str = Field(min_length=1)
    product_id: str = Field(min_length=3, description="CPU:RAM")
    vlan_id: str | None = None
    zone_id: str | None = None
    password: str | None = None


class AlterRequest(BaseModel):
    product_id: str = Field(min_length=3)


class InstanceRead(BaseModel):
    instance_id: str
    name: str
    phase: str
    region_id: str | None
    datacenter_id: str | None
    vlan_id: str | None
    description: str | None
    image_id: str | None
    platform: str
    architecture: str
    product_id: str
    cpu_count: int | None
    ram_mb: int | None
    disk_sizes_gb: list[int] | None
    public_addresses: list[str]
    private_addresses: list[str]
    created_at: datetime | None
    failure_reason: str | None

    @classmethod
    def from_observation(cls, observation: InstanceObservation) -> "InstanceRead":
        spec = observation.spec
        return cls(
            instance_id=observation.instance_id,
            name=observation.name,
            phase=observation.phase.value,
            region_id=observation.region_id,
            datacenter_id=observation.datacenter_id,
            vlan_id=observation.vlan_id,
            description=observation.description,
            image_id=observation.image_id,
            platform=observation.platform,
            architecture=observation.architecture,
            product_id=observation.product_id,
            cpu_count=spec.cpu_count if spec else None,
            ram_mb=spec.ram_mb if spec else None,
            disk_sizes_gb=(
                list(spec.disk_sizes_gb) if spec and spec.disk_sizes_gb is not None else None
            ),
            public_addresses=list(observation.public_addresses),
            private_addresses=list(observation.private_addresses),
            created_at=observation.created_at,
            failure_reason=observation.failure_reason,
        )


class LaunchResponse(BaseModel):
    instance: InstanceRead
    branch: str
    root_password: str | None
    operation_id: str | None = None


class InstanceStatus(BaseModel):
    instance_id: str
    phase: str


class ProductRead(BaseModel):
    product_id: str
    name: str
    description: str
    cpu_count: int
    ram_mb: int
    root_volume_gb: int
    architecture: str

    @classmethod
    def from_descriptor(cls, product: ProductDescriptor) -> "ProductRead":
        return cls(
            product_id=product.product_id,
            name=product.name,
            description=product.description,
            cpu_count=product.cpu_count,
            ram_mb=product.ram_mb,
            root_volume_gb=product.root_volume_gb,
            architecture=product.architecture,
        )


class OperationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    operation_id: str
    kind: str
    instance_id: str
    state: str
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None
    last_error: str | None


class OperationAccepted(BaseModel):
    operation_id: str
    instance_id: str
    kind: str
    state: str
