import threading
from typing import Any, cast

import pytest

from vm_lifecycle.clients.control_plane import ServerPage
from vm_lifecycle.errors import RemoteCallFailed
from vm_lifecycle.services.enumerator import InstanceEnumerator


def _server(index: int, *, name: str | None = None, vlan: str = "vlan-1") -> dict:
    return {
        "id": f"srv-{index}",
        "name": name or f"node-{index}",
        "networkId": vlan,
        "cpuCount": 1,
        "memoryMb": 1024,
        "isDeployed": True,
        "isStarted": True,
        "state": "NORMAL",
    }


class FakePagedClient:
    def __init__(self, page_sizes: list[int], page_size: int = 250, fail_page: int | None = None):
        self.page_size = page_size
        self.fail_page = fail_page
        self.pages: dict[int, list[dict]] = {}
        counter = 0
        for number, size in enumerate(page_sizes, start=1):
            self.pages[number] = [_server(counter + i) for i in range(size)]
            counter += size
        self.calls: list[int] = []
        self.threads: set[str] = set()
        self._lock = threading.Lock()

    def list_servers_page(self, page_number, page_size, location, *, ordered=False):
        with self._lock:
            self.calls.append(page_number)
            self.threads.add(threading.current_thread().name)
        if page_number == self.fail_page:
            raise RemoteCallFailed(command="list", resource="serverWithState", detail="boom")
        items = self.pages.get(page_number, [])
        return ServerPage(page_number=page_number, page_count=len(items), items=items)

    def get_server(self, server_id):
        for items in self.pages.values():
            for item in items:
                if item["id"] == server_id:
                    return item
        return None


def test_three_full_pages_and_a_partial_page_are_fully_drained():
    client = FakePagedClient([250, 250, 250, 10])
    enumerator = InstanceEnumerator(cast(Any, client), "na1", page_size=250)
    result = enumerator.list_instances()
    # every page has been walked before the iterator is handed back
    assert sorted(client.calls) == [1, 2, 3, 4]
    servers = list(result)
    assert len(servers) == 760
    assert [s.instance_id for s in servers] == [f"srv-{i}" for i in range(760)]
    assert any(name.startswith("list-page-") for name in client.threads)


def test_result_is_one_shot():
    client = FakePagedClient([3])
    enumerator = InstanceEnumerator(cast(Any, client), "na1", page_size=250)
    result = enumerator.list_instances()
    assert len(list(result)) == 3
    assert list(result) == []


def test_exactly_full_last_page_fetches_one_empty_page():
    client = FakePagedClient([2, 2], page_size=2)
    enumerator = InstanceEnumerator(cast(Any, client), "na1", page_size=2)
    assert len(list(enumerator.list_instances())) == 4
    assert sorted(client.calls) == [1, 2, 3]


def test_failure_on_a_later_page_surfaces_to_the_caller():
    client = FakePagedClient([2, 2, 1], page_size=2, fail_page=2)
    enumerator = InstanceEnumerator(cast(Any, client), "na1", page_size=2)
    with pytest.raises(RemoteCallFailed):
        enumerator.list_instances()


def test_undecodable_entries_are_skipped():
    client = FakePagedClient([2])
    client.pages[1].append({"name": "no id"})
    enumerator = InstanceEnumerator(cast(Any, client), "na1", page_size=250)
    assert len(list(enumerator.list_instances())) == 2


def test_non_mapping_entries_are_skipped_on_a_full_page():
    client = FakePagedClient([2, 1], page_size=2)
    client.pages[1][1] = cast(Any, "not-a-server")
    enumerator = InstanceEnumerator(cast(Any, client), "na1", page_size=2)
    assert [s.instance_id for s in enumerator.list_instances()] == ["srv-0", "srv-2"]
    assert sorted(client.calls) == [1, 2]


def test_decode_failure_still_joins_the_next_page_fetch(monkeypatch):
    from vm_lifecycle.services import enumerator as enumerator_module

    real_decode = enumerator_module.decode_observation

    def decode(payload):
        if payload.get("id") == "srv-1":
            raise RuntimeError("decoder bug")
        return real_decode(payload)

    monkeypatch.setattr(enumerator_module, "decode_observation", decode)
    client = FakePagedClient([2, 2, 1], page_size=2)
    enumerator = InstanceEnumerator(cast(Any, client), "na1", page_size=2)
    with pytest.raises(RuntimeError):
        enumerator.list_instances()
    assert sorted(client.calls) == [1, 2, 3]
    assert not [t for t in threading.enumerate() if t.name.startswith("list-page-")]


def test_find_by_name_and_vlan():
    client = FakePagedClient([0])
    client.pages[1] = [
        _server(1, name="web", vlan="vlan-1"),
        _server(2, name="web", vlan="vlan-2"),
    ]
    enumerator = InstanceEnumerator(cast(Any, client), "na1")
    found = enumerator.find_by_name_and_vlan("web", "vlan-2")
    assert found is not None
    assert found.instance_id == "srv-2"
    assert enumerator.find_by_name_and_vlan("web", "vlan-3") is None


def test_get_decodes_single_server():
    client = FakePagedClient([1])
    enumerator = InstanceEnumerator(cast(Any, client), "na1")
    assert enumerator.get("srv-0").name == "node-0"
    assert enumerator.get("missing") is None
