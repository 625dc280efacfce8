import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from vm_lifecycle.errors import (
    ConvergenceTimeout,
    FatalTerminationReason,
    ImageNotFound,
    LifecycleError,
    OperationCancelled,
    RemoteCallFailed,
    ResourceVanished,
)
from vm_lifecycle.metrics import metrics
from vm_lifecycle.schemas import (
    AlterRequest,
    InstanceRead,
    InstanceStatus,
    LaunchRequest,
    LaunchResponse,
    OperationAccepted,
    OperationRead,
    ProductRead,
)
from vm_lifecycle.service import VirtualMachineService, build_service


logger = logging.getLogger(__name__)
router = APIRouter()


@lru_cache(maxsize=1)
def get_service() -> VirtualMachineService:
    return build_service()


def error_status(exc: Exception) -> int:
    if isinstance(exc, ValueError):
        return 422
    if isinstance(exc, (ImageNotFound, ResourceVanished)):
        return 404
    if isinstance(exc, FatalTerminationReason):
        return 409
    if isinstance(exc, RemoteCallFailed):
        return 502
    if isinstance(exc, OperationCancelled):
        return 503
    if isinstance(exc, ConvergenceTimeout):
        return 504
    return 500


def lifecycle_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = error_status(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    payload = {"detail": str(exc), "error_type": exc.__class__.__name__}
    for attr in ("instance_id", "result_code", "code", "phase"):
        value = getattr(exc, attr, None)
        if value is not None:
            payload[attr] = value
    return JSONResponse(status_code=status_code, content=payload)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.post("/v1/instances", response_model=LaunchResponse, status_code=201)
def launch_instance(
    req: LaunchRequest, service: VirtualMachineService = Depends(get_service)
) -> LaunchResponse:
    result = service.start_launch(
        req.product_id,
        req.image_id,
        req.name,
        req.description,
        vlan_id=req.vlan_id,
        password=req.password,
        zone_id=req.zone_id,
    )
    return LaunchResponse(
        instance=InstanceRead.from_observation(result.instance),
        branch=result.branch,
        root_password=result.instance.root_password,
        operation_id=result.background.operation_id if result.background else None,
    )


@router.get("/v1/instances", response_model=list[InstanceRead])
def list_instances(service: VirtualMachineService = Depends(get_service)) -> list[InstanceRead]:
    return [InstanceRead.from_observation(server) for server in service.list_instances()]


@router.get("/v1/statuses", response_model=list[InstanceStatus])
def list_statuses(service: VirtualMachineService = Depends(get_service)) -> list[InstanceStatus]:
    return [
        InstanceStatus(instance_id=instance_id, phase=phase.value)
        for instance_id, phase in service.list_statuses()
    ]


@router.get("/v1/instances/{instance_id}", response_model=InstanceRead)
def get_instance(
    instance_id: str, service: VirtualMachineService = Depends(get_service)
) -> InstanceRead:
    server = service.get(instance_id)
    if server is None:
        raise HTTPException(status_code=404, detail="instance not found")
    return InstanceRead.from_observation(server)


@router.patch("/v1/instances/{instance_id}", response_model=InstanceRead)
def alter_instance(
    instance_id: str,
    req: AlterRequest,
    service: VirtualMachineService = Depends(get_service),
) -> InstanceRead:
    return InstanceRead.from_observation(service.alter(instance_id, req.product_id))


@router.delete("/v1/instances/{instance_id}", response_model=OperationAccepted, status_code=202)
def terminate_instance(
    instance_id: str, service: VirtualMachineService = Depends(get_service)
) -> OperationAccepted:
    handle = service.submit_termination(instance_id)
    return OperationAccepted(
        operation_id=handle.operation_id,
        instance_id=instance_id,
        kind=handle.kind,
        state=handle.state,
    )


@router.post("/v1/instances/{instance_id}/start", status_code=202)
def start_instance(
    instance_id: str, service: VirtualMachineService = Depends(get_service)
) -> dict[str, str]:
    service.start(instance_id)
    return {"status": "accepted"}


@router.post("/v1/instances/{instance_id}/stop", status_code=202)
def stop_instance(
    instance_id: str,
    hard: bool = Query(default=False),
    service: VirtualMachineService = Depends(get_service),
) -> dict[str, str]:
    service.stop(instance_id, hard=hard)
    return {"status": "accepted"}


@router.post("/v1/instances/{instance_id}/reboot", status_code=202)
def reboot_instance(
    instance_id: str, service: VirtualMachineService = Depends(get_service)
) -> dict[str, str]:
    service.reboot(instance_id)
    return {"status": "accepted"}


@router.get("/v1/products", response_model=list[ProductRead])
def list_products(
    architecture: str = Query(default="I64"),
    service: VirtualMachineService = Depends(get_service),
) -> list[ProductRead]:
    return [ProductRead.from_descriptor(p) for p in service.list_products(architecture)]


@router.get("/v1/products/{product_id}", response_model=ProductRead)
def get_product(
    product_id: str, service: VirtualMachineService = Depends(get_service)
) -> ProductRead:
    product = service.get_product(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="product not found")
    return ProductRead.from_descriptor(product)


@router.get("/v1/operations", response_model=list[OperationRead])
def list_operations(
    instance_id: str | None = Query(default=None),
    state: str | None = Query(default=None),
    service: VirtualMachineService = Depends(get_service),
) -> list[OperationRead]:
    return [
        OperationRead.model_validate(op) for op in service.operations(instance_id, state)
    ]


def install_error_handlers(app) -> None:
    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
    app.add_exception_handler(ValueError, lifecycle_error_handler)
