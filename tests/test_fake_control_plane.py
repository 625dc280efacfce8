import pytest
from fastapi.testclient import TestClient

from fake_control_plane.app import (
    app,
    attach_dependent,
    inject_result,
    issued_commands,
    reset_state,
    seed_image,
    seed_server,
    seed_vlan,
)
from fake_control_plane.config import get_settings


AUTH = ("admin", "admin")


@pytest.fixture(autouse=True)
def slow_settling(monkeypatch):
    monkeypatch.setenv("FAKE_CONTROL_PLANE_SETTLE_READS", "2")
    get_settings.cache_clear()
    reset_state()
    yield
    get_settings.cache_clear()


def _invoke(client: TestClient, command: str, resource: str, body: dict | None = None) -> dict:
    response = client.post(
        "/v1/commands",
        json={"command": command, "resource": resource, "body": body or {}},
        auth=AUTH,
    )
    assert response.status_code == 200
    return response.json()


def test_commands_require_credentials() -> None:
    client = TestClient(app)
    payload = {"command": "list", "resource": "datacenterWithLimits"}
    assert client.post("/v1/commands", json=payload).status_code == 401
    assert client.post("/v1/commands", json=payload, auth=("admin", "wrong")).status_code == 401
    assert client.get("/healthz").json()["status"] == "ok"


def test_deploy_settles_over_reads() -> None:
    client = TestClient(app)
    seed_image("img-1", cpu_count=2, memory_mb=4096)
    seed_vlan("vlan-1")
    deployed = _invoke(
        client,
        "deploy",
        "server",
        {
            "name": "web",
            "vlanResourcePath": "/network/vlan-1",
            "imageResourcePath": "/image/img-1",
            "administratorPassword": "long-enough",
            "isStarted": True,
        },
    )
    server_id = deployed["data"]["id"]
    states = [
        _invoke(client, "get", "serverWithState", {"id": server_id})["data"]["state"]
        for _ in range(3)
    ]
    assert states == ["PENDING_ADD", "PENDING_ADD", "NORMAL"]


def test_deploy_rejects_short_password_and_unknown_image() -> None:
    client = TestClient(app)
    seed_image("img-1", cpu_count=2, memory_mb=4096)
    seed_vlan("vlan-1")
    body = {
        "name": "web",
        "vlanResourcePath": "/network/vlan-1",
        "imageResourcePath": "/image/img-1",
        "administratorPassword": "short",
    }
    assert _invoke(client, "deploy", "server", body)["result_code"] == "REASON_310"
    body["imageResourcePath"] = "/image/img-x"
    body["administratorPassword"] = "long-enough"
    assert _invoke(client, "deploy", "server", body)["result_code"] == "REASON_395"


def test_delete_refusals() -> None:
    client = TestClient(app)
    running = seed_server(name="web", vlan_id="vlan-1")
    assert _invoke(client, "delete", f"server/{running}")["result_code"] == "REASON_20"

    attached = seed_server(name="lb-member", vlan_id="vlan-1", started=False)
    attach_dependent(attached)
    assert _invoke(client, "delete", f"server/{attached}")["result_code"] == "REASON_393"


def test_deleted_server_disappears_after_settling() -> None:
    client = TestClient(app)
    server_id = seed_server(name="web", vlan_id="vlan-1", started=False)
    assert _invoke(client, "delete", f"server/{server_id}")["success"]
    assert _invoke(client, "get", "serverWithState", {"id": server_id})["data"]["state"] == (
        "PENDING_DELETE"
    )
    _invoke(client, "get", "serverWithState", {"id": server_id})
    gone = _invoke(client, "get", "serverWithState", {"id": server_id})
    assert gone["result_code"] == "REASON_395"


def test_list_pages_and_orders_by_creation() -> None:
    client = TestClient(app)
    for index in range(5):
        seed_server(name=f"node-{index}", vlan_id="vlan-1", created=f"2020-01-0{index + 1}")
    first = _invoke(client, "list", "serverWithState", {"pageSize": 2, "pageNumber": 1})
    last = _invoke(client, "list", "serverWithState", {"pageSize": 2, "pageNumber": 3})
    assert first["data"]["pageCount"] == 2
    assert last["data"]["pageCount"] == 1
    ordered = _invoke(
        client, "list", "serverWithState", {"pageSize": 10, "orderBy": "created.desc"}
    )
    assert [s["name"] for s in ordered["data"]["servers"]][:2] == ["node-4", "node-3"]


def test_injected_results_take_precedence() -> None:
    client = TestClient(app)
    server_id = seed_server(name="web", vlan_id="vlan-1")
    inject_result("modify", "REASON_310", times=2)
    for _ in range(2):
        assert not _invoke(client, "modify", f"server/{server_id}", {"cpuCount": 2})["success"]
    assert _invoke(client, "modify", f"server/{server_id}", {"cpuCount": 2})["success"]
    assert [c[0] for c in issued_commands()] == ["modify", "modify", "modify"]
