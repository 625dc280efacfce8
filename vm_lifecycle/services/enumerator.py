"""Paginated listing of servers.

A full page means another page may follow, so the next page is fetched on its
own thread while the current one is decoded. Each level waits for the level
below it before returning, which means the top-level call only returns once
every page has been walked. Results keep page order.
"""

import logging
import threading
from typing import Iterator

from vm_lifecycle.clients.control_plane import ControlPlaneClient
from vm_lifecycle.observation import InstanceObservation, decode_observation


logger = logging.getLogger(__name__)


class _PageFetch(threading.Thread):
    def __init__(self, enumerator: "InstanceEnumerator", page_number: int, ordered: bool):
        super().__init__(name=f"list-page-{page_number}", daemon=True)
        self.enumerator = enumerator
        self.page_number = page_number
        self.ordered = ordered
        self.result: list[InstanceObservation] = []
        self.error: BaseException | None = None

    def run(self) -> None:
        try:
            self.result = self.enumerator._walk(self.page_number, self.ordered)
        except BaseException as exc:  # noqa: BLE001
            self.error = exc

    def collect(self) -> list[InstanceObservation]:
        self.join()
        if self.error is not None:
            raise self.error
        return self.result


class InstanceEnumerator:
    def __init__(self, client: ControlPlaneClient, region_id: str, page_size: int = 250):
        self.client = client
        self.region_id = region_id
        self.page_size = page_size

    def list_instances(self, *, ordered: bool = False) -> Iterator[InstanceObservation]:
        """Walk every page and return a one-shot iterator over the results."""
        observations = self._walk(1, ordered)
        logger.debug("enumerated %d servers in %s", len(observations), self.region_id)
        return iter(observations)

    def _walk(self, page_number: int, ordered: bool) -> list[InstanceObservation]:
        page = self.client.list_servers_page(
            page_number, self.page_size, self.region_id, ordered=ordered
        )
        next_page: _PageFetch | None = None
        if page.page_count >= self.page_size:
            next_page = _PageFetch(self, page_number + 1, ordered)
            next_page.start()

        observations: list[InstanceObservation] = []
        try:
            for payload in page.items:
                try:
                    observation = decode_observation(payload)
                except (AttributeError, KeyError, TypeError, ValueError) as exc:
                    logger.warning(
                        "skipping undecodable server on page %d: %s", page_number, exc
                    )
                    continue
                if observation is not None:
                    observations.append(observation)
        finally:
            # The next page is always joined, even when decoding this one fails.
            if next_page is not None:
                next_page.join()

        if next_page is not None:
            observations.extend(next_page.collect())
        return observations

    def get(self, instance_id: str) -> InstanceObservation | None:
        return decode_observation(self.client.get_server(instance_id))

    def find_by_name_and_vlan(self, name: str, vlan_id: str) -> InstanceObservation | None:
        for observation in self.list_instances(ordered=True):
            if observation.name == name and observation.vlan_id == vlan_id:
                return observation
        logger.debug("no server named %s on vlan %s", name, vlan_id)
        return None
