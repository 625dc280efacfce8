import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from vm_lifecycle.clients.http import RequestFailure, RetryPolicy, request_with_retry
from vm_lifecycle.errors import RemoteCallFailed


logger = logging.getLogger(__name__)

SERVER_BASE = "server"
SERVER_WITH_STATE = "serverWithState"
DATACENTER_WITH_LIMITS = "datacenterWithLimits"

DEPLOY = "deploy"
MODIFY = "modify"
ADD_LOCAL_STORAGE = "addLocalStorage"
START = "start"
SHUTDOWN = "shutdown"
POWER_OFF = "poweroff"
REBOOT = "reboot"
DESTROY = "delete"
CLEAN = "clean"
GET = "get"
LIST = "list"


@dataclass
class CommandResult:
    success: bool
    result_code: str | None = None
    detail: str | None = None
    data: Any = None

    def raise_for_failure(self, command: str, resource: str) -> "CommandResult":
        if not self.success:
            raise RemoteCallFailed(
                command=command,
                resource=resource,
                result_code=self.result_code,
                detail=self.detail or "command rejected without explanation",
            )
        return self


@dataclass
class ServerPage:
    page_number: int
    page_count: int
    items: list[dict] = field(default_factory=list)


def server_ref(server_id: str) -> str:
    return f"{SERVER_BASE}/{server_id}"


class ControlPlaneClient:
    """Synchronous command client for the remote control plane.

    Every operation funnels through :meth:`invoke`; transport failures surface
    as :class:`RemoteCallFailed` once the HTTP retry policy is exhausted.
    """

    def __init__(
        self,
        base_url: str,
        user: str,
        password: str,
        retry: RetryPolicy,
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self.retry = retry
        if client is None:
            client = httpx.Client(
                base_url=base_url.rstrip("/"), auth=(user, password), timeout=timeout
            )
        self.client = client

    def close(self) -> None:
        self.client.close()

    def invoke(self, command: str, resource_ref: str, body: dict | None = None) -> CommandResult:
        payload = {"command": command, "resource": resource_ref, "body": body or {}}
        try:
            response = request_with_retry(
                self.client, "POST", "/v1/commands", self.retry, json=payload
            )
        except RequestFailure as exc:
            raise RemoteCallFailed(
                command=command,
                resource=resource_ref,
                detail=exc.detail,
                status_code=exc.status_code,
            ) from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteCallFailed(
                command=command, resource=resource_ref, detail=f"invalid response body: {exc}"
            ) from exc
        result = CommandResult(
            success=bool(data.get("success")),
            result_code=data.get("result_code"),
            detail=data.get("detail"),
            data=data.get("data"),
        )
        logger.debug(
            "command %s %s -> success=%s result_code=%s",
            command,
            resource_ref,
            result.success,
            result.result_code,
        )
        return result

    def deploy(
        self,
        *,
        name: str,
        description: str,
        vlan_path: str,
        image_path: str,
        administrator_password: str,
        start: bool,
        location: str | None = None,
    ) -> CommandResult:
        body = {
            "name": name,
            "description": description,
            "vlanResourcePath": vlan_path,
            "imageResourcePath": image_path,
            "administratorPassword": administrator_password,
            "isStarted": start,
        }
        if location:
            body["location"] = location
        return self.invoke(DEPLOY, SERVER_BASE, body)

    def modify(
        self, server_id: str, *, cpu_count: int | None = None, memory_mb: int | None = None
    ) -> CommandResult:
        body: dict[str, int] = {}
        if cpu_count is not None:
            body["cpuCount"] = cpu_count
        if memory_mb is not None:
            body["memory"] = memory_mb
        return self.invoke(MODIFY, server_ref(server_id), body)

    def add_local_storage(self, server_id: str, amount_gb: int) -> CommandResult:
        return self.invoke(ADD_LOCAL_STORAGE, server_ref(server_id), {"amount": amount_gb})

    def start(self, server_id: str) -> CommandResult:
        return self.invoke(START, server_ref(server_id))

    def shutdown(self, server_id: str) -> CommandResult:
        return self.invoke(SHUTDOWN, server_ref(server_id))

    def power_off(self, server_id: str) -> CommandResult:
        return self.invoke(POWER_OFF, server_ref(server_id))

    def reboot(self, server_id: str) -> CommandResult:
        return self.invoke(REBOOT, server_ref(server_id))

    def destroy(self, server_id: str) -> CommandResult:
        return self.invoke(DESTROY, server_ref(server_id))

    def clean(self, server_id: str) -> CommandResult:
        return self.invoke(CLEAN, server_ref(server_id))

    def get_server(self, server_id: str) -> dict | None:
        result = self.invoke(GET, SERVER_WITH_STATE, {"id": server_id})
        if not result.success:
            if result.result_code in {"NOT_FOUND", "REASON_395"}:
                return None
            result.raise_for_failure(GET, SERVER_WITH_STATE)
        return result.data or None

    def list_servers_page(
        self, page_number: int, page_size: int, location: str, *, ordered: bool = False
    ) -> ServerPage:
        body: dict[str, Any] = {
            "pageSize": page_size,
            "pageNumber": page_number,
            "location": location,
        }
        if ordered:
            body["orderBy"] = "created.desc"
            body["state"] = ["PENDING_ADD", "NORMAL", "PENDING_CHANGE"]
        result = self.invoke(LIST, SERVER_WITH_STATE, body).raise_for_failure(
            LIST, SERVER_WITH_STATE
        )
        data = result.data or {}
        items = list(data.get("servers") or [])
        return ServerPage(
            page_number=int(data.get("pageNumber", page_number)),
            page_count=int(data.get("pageCount", len(items))),
            items=items,
        )

    def datacenters_with_limits(self) -> list[dict]:
        result = self.invoke(LIST, DATACENTER_WITH_LIMITS).raise_for_failure(
            LIST, DATACENTER_WITH_LIMITS
        )
        return list(result.data or [])
