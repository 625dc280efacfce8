"""In-memory stand-in for the remote control plane.

Implements the single ``POST /v1/commands`` primitive over a process-local
inventory of servers, images, VLANs and addresses. Structural commands can be
made to settle over several reads (``settle_reads``) to mimic eventual
consistency, and result codes can be injected per command for failure tests.
"""

import itertools
import secrets
import uuid
from datetime import UTC, datetime
from threading import Lock
from typing import Any

from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field

from fake_control_plane.config import get_settings


app = FastAPI(title="Fake Control Plane")
security = HTTPBasic(auto_error=False)

_lock = Lock()
_servers: dict[str, dict] = {}
_images: dict[str, dict] = {}
_vlans: dict[str, dict] = {}
_injected: dict[str, list[tuple[str, str]]] = {}
_commands: list[tuple[str, str, dict]] = []
_ip_counter = itertools.count(10)

SUCCESS = "REASON_0"
NOT_FOUND = "REASON_395"
ATTACHED_TO_DEPENDENT = "REASON_393"
SERVER_STARTED = "REASON_20"
INVALID = "REASON_310"


class CommandRequest(BaseModel):
    command: str
    resource: str
    body: dict[str, Any] = Field(default_factory=dict)


def _ok(data: Any = None, result_code: str = SUCCESS) -> dict:
    return {"success": True, "result_code": result_code, "detail": None, "data": data}


def _fail(result_code: str, detail: str) -> dict:
    return {"success": False, "result_code": result_code, "detail": detail, "data": None}


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def reset_state() -> None:
    global _ip_counter
    with _lock:
        _servers.clear()
        _images.clear()
        _vlans.clear()
        _injected.clear()
        _commands.clear()
        _ip_counter = itertools.count(10)


def seed_image(
    image_id: str,
    *,
    cpu_count: int,
    memory_mb: int,
    platform: str = "UBUNTU",
    architecture: str = "I64",
    os_display_name: str = "UBUNTU10/64",
) -> dict:
    image = {
        "id": image_id,
        "name": image_id,
        "cpuCount": cpu_count,
        "memory": memory_mb,
        "platform": platform,
        "architecture": architecture,
        "osDisplayName": os_display_name,
    }
    with _lock:
        _images[image_id] = image
    return image


def seed_vlan(vlan_id: str, location: str | None = None) -> None:
    with _lock:
        _vlans[vlan_id] = {
            "id": vlan_id,
            "location": location or get_settings().location,
            "resourcePath": f"/network/{vlan_id}",
        }


def seed_server(
    *,
    name: str,
    vlan_id: str,
    cpu_count: int = 1,
    memory_mb: int = 2048,
    started: bool = True,
    image_id: str | None = None,
    public_ip: str | None = None,
    created: str | None = None,
) -> str:
    server_id = uuid.uuid4().hex
    with _lock:
        record = _new_server(
            server_id,
            name=name,
            description=name,
            vlan_id=vlan_id,
            image={"id": image_id, "cpuCount": cpu_count, "memory": memory_mb},
            started=started,
            location=get_settings().location,
        )
        record["publicIp"] = public_ip
        if created:
            record["created"] = created
        _servers[server_id] = record
    return server_id


def bind_address(server_id: str, address: str) -> None:
    with _lock:
        _servers[server_id]["publicIp"] = address


def attach_dependent(server_id: str, attached: bool = True) -> None:
    with _lock:
        _servers[server_id]["dependent"] = attached


def inject_result(
    command: str, result_code: str, detail: str = "injected", times: int = 1
) -> None:
    """Make the next ``times`` invocations of ``command`` fail with ``result_code``."""
    with _lock:
        _injected.setdefault(command, []).extend([(result_code, detail)] * times)


def issued_commands() -> list[tuple[str, str, dict]]:
    with _lock:
        return list(_commands)


def server_record(server_id: str) -> dict | None:
    with _lock:
        record = _servers.get(server_id)
        return dict(record) if record else None


def _new_server(
    server_id: str,
    *,
    name: str,
    description: str,
    vlan_id: str,
    image: dict,
    started: bool,
    location: str,
) -> dict:
    settings = get_settings()
    return {
        "id": server_id,
        "name": name,
        "description": description,
        "location": location,
        "networkId": vlan_id,
        "operatingSystem": {"displayName": image.get("osDisplayName", "UBUNTU10/64")},
        "cpuCount": image["cpuCount"],
        "memoryMb": image["memory"],
        "disks": [{"scsiId": 0, "sizeGb": settings.os_storage_gb}],
        "sourceImageId": image.get("id"),
        "privateIp": f"10.0.0.{next(_ip_counter)}",
        "publicIp": None,
        "created": _now(),
        "isStarted": started,
        "dependent": False,
        "deleted": False,
        "pending_state": None,
        "pending_action": None,
        "reads_left": 0,
    }


def _settle(record: dict, state: str, action: str | None = None) -> None:
    record["pending_state"] = state
    record["pending_action"] = action
    record["reads_left"] = get_settings().settle_reads


def _observe(server_id: str) -> dict | None:
    """Render a server the way a read sees it, advancing its settle counter."""
    record = _servers.get(server_id)
    if record is None:
        return None
    if record["reads_left"] > 0:
        record["reads_left"] -= 1
        state = record["pending_state"]
        action = record["pending_action"]
    else:
        if record["deleted"]:
            del _servers[server_id]
            return None
        state, action = "NORMAL", None
    payload = {
        key: value
        for key, value in record.items()
        if key not in {"dependent", "deleted", "pending_state", "pending_action", "reads_left"}
    }
    payload["disks"] = [dict(disk) for disk in record["disks"]]
    payload["isDeployed"] = state != "PENDING_ADD"
    payload["state"] = state
    payload["status"] = {"action": action} if action else {}
    return payload


def _server_id(resource: str) -> str:
    _, _, server_id = resource.partition("/")
    return server_id


def _deploy(body: dict) -> dict:
    settings = get_settings()
    image_id = str(body.get("imageResourcePath", "")).rsplit("/", 1)[-1]
    vlan_id = str(body.get("vlanResourcePath", "")).rsplit("/", 1)[-1]
    image = _images.get(image_id)
    if image is None:
        return _fail(NOT_FOUND, f"no image {image_id}")
    if vlan_id not in _vlans:
        return _fail(NOT_FOUND, f"no vlan {vlan_id}")
    if len(str(body.get("administratorPassword") or "")) < 8:
        return _fail(INVALID, "administrator password too short")
    server_id = uuid.uuid4().hex
    record = _new_server(
        server_id,
        name=str(body.get("name")),
        description=str(body.get("description") or ""),
        vlan_id=vlan_id,
        image=image,
        started=bool(body.get("isStarted")),
        location=str(body.get("location") or settings.location),
    )
    _settle(record, "PENDING_ADD")
    _servers[server_id] = record
    return _ok({"id": server_id})


def _modify(record: dict, body: dict) -> dict:
    settings = get_settings()
    cpu = body.get("cpuCount")
    memory = body.get("memory")
    if cpu is not None and not 1 <= int(cpu) <= settings.max_cpu:
        return _fail(INVALID, f"cpuCount {cpu} out of range")
    if memory is not None and not 1 <= int(memory) <= settings.max_ram_mb:
        return _fail(INVALID, f"memory {memory} out of range")
    if cpu is not None:
        record["cpuCount"] = int(cpu)
    if memory is not None:
        record["memoryMb"] = int(memory)
    _settle(record, "PENDING_CHANGE")
    return _ok()


def _add_storage(record: dict, body: dict) -> dict:
    if len(record["disks"]) >= get_settings().max_disks:
        return _fail(INVALID, "no free disk slot")
    amount = int(body.get("amount") or 0)
    if amount <= 0:
        return _fail(INVALID, "amount must be positive")
    next_scsi = max(disk["scsiId"] for disk in record["disks"]) + 1
    record["disks"].append({"scsiId": next_scsi, "sizeGb": amount})
    _settle(record, "PENDING_CHANGE")
    return _ok()


def _power(record: dict, command: str) -> dict:
    if command == "start":
        record["isStarted"] = True
        _settle(record, "PENDING_CHANGE", "START_SERVER")
    elif command == "reboot":
        if not record["isStarted"]:
            return _fail(INVALID, "server is stopped")
        _settle(record, "PENDING_CHANGE", "RESET_SERVER")
    else:
        record["isStarted"] = False
        action = "SHUTDOWN_SERVER" if command == "shutdown" else "POWER_OFF_SERVER"
        _settle(record, "PENDING_CHANGE", action)
    return _ok()


def _delete(record: dict) -> dict:
    if record["dependent"]:
        return _fail(ATTACHED_TO_DEPENDENT, "server is a load balancer real-server")
    if record["isStarted"]:
        return _fail(SERVER_STARTED, "server must be stopped before deletion")
    record["deleted"] = True
    _settle(record, "PENDING_DELETE")
    if record["reads_left"] == 0:
        del _servers[record["id"]]
    return _ok()


def _list_servers(body: dict) -> dict:
    page_size = int(body.get("pageSize") or 250)
    page_number = int(body.get("pageNumber") or 1)
    location = body.get("location")
    states = set(body.get("state") or [])
    ids = [
        server_id
        for server_id, record in _servers.items()
        if not location or record["location"] == location
    ]
    if body.get("orderBy") == "created.desc":
        ids.sort(key=lambda server_id: _servers[server_id]["created"], reverse=True)
    start = (page_number - 1) * page_size
    servers = []
    for server_id in ids[start : start + page_size]:
        payload = _observe(server_id)
        if payload is None:
            continue
        if states and payload["state"] not in states:
            continue
        servers.append(payload)
    return _ok(
        {
            "servers": servers,
            "pageNumber": page_number,
            "pageCount": len(servers),
            "pageSize": page_size,
            "totalCount": len(ids),
        }
    )


def _search_image(body: dict) -> dict:
    for image in _images.values():
        if (
            image["platform"] == body.get("platform")
            and image["architecture"] == body.get("architecture")
            and image["cpuCount"] == body.get("cpuCount")
            and image["memory"] == body.get("memory")
        ):
            return _ok(dict(image))
    return _fail(NOT_FOUND, "no matching image")


def _release_address(address: str) -> dict:
    for record in _servers.values():
        if record["publicIp"] == address:
            record["publicIp"] = None
            return _ok()
    return _fail(NOT_FOUND, f"address {address} is not bound")


def _dispatch(req: CommandRequest) -> dict:
    command, resource, body = req.command, req.resource, req.body
    settings = get_settings()

    if command == "deploy" and resource == "server":
        return _deploy(body)
    if command == "get" and resource == "serverWithState":
        payload = _observe(str(body.get("id")))
        return _ok(payload) if payload else _fail(NOT_FOUND, "no such server")
    if command == "list" and resource == "serverWithState":
        return _list_servers(body)
    if command == "list" and resource == "datacenterWithLimits":
        return _ok(
            [
                {
                    "location": settings.location,
                    "displayName": settings.display_name,
                    "maxCpu": settings.max_cpu,
                    "maxRamMb": settings.max_ram_mb,
                }
            ]
        )
    if command == "search" and resource == "image":
        return _search_image(body)
    if command == "get" and resource.startswith("image/"):
        image = _images.get(resource.partition("/")[2])
        return _ok(dict(image)) if image else _fail(NOT_FOUND, "no such image")
    if command == "get" and resource.startswith("network/"):
        vlan = _vlans.get(resource.partition("/")[2])
        return _ok(dict(vlan)) if vlan else _fail(NOT_FOUND, "no such vlan")
    if command == "release" and resource.startswith("address/"):
        return _release_address(resource.partition("/")[2])

    if resource.startswith("server/"):
        record = _servers.get(_server_id(resource))
        if record is None or record["deleted"]:
            return _fail(NOT_FOUND, "no such server")
        if command == "modify":
            return _modify(record, body)
        if command == "addLocalStorage":
            return _add_storage(record, body)
        if command in {"start", "shutdown", "poweroff", "reboot"}:
            return _power(record, command)
        if command == "delete":
            return _delete(record)
        if command == "clean":
            return _ok()
    return _fail("UNSUPPORTED", f"unsupported command {command} on {resource}")


def _authorize(credentials: HTTPBasicCredentials | None = Depends(security)) -> None:
    settings = get_settings()
    if credentials is None:
        raise HTTPException(status_code=401, detail="missing credentials")
    valid_user = secrets.compare_digest(credentials.username, settings.user)
    valid_password = secrets.compare_digest(credentials.password, settings.password)
    if not (valid_user and valid_password):
        raise HTTPException(status_code=401, detail="invalid credentials")


@app.get("/healthz")
def healthz() -> dict:
    settings = get_settings()
    with _lock:
        servers = len(_servers)
    return {"status": "ok", "location": settings.location, "servers": servers}


@app.post("/v1/commands", dependencies=[Depends(_authorize)])
def run_command(req: CommandRequest) -> dict:
    with _lock:
        _commands.append((req.command, req.resource, dict(req.body)))
        queued = _injected.get(req.command)
        if queued:
            result_code, detail = queued.pop(0)
            return _fail(result_code, detail)
        return _dispatch(req)
