import threading
from typing import Any, cast

import pytest

from vm_lifecycle.clients.control_plane import CommandResult
from vm_lifecycle.convergence import ConvergenceWaiter
from vm_lifecycle.errors import FatalTerminationReason, OperationCancelled, RemoteCallFailed
from vm_lifecycle.metrics import metrics
from vm_lifecycle.observation import InstanceObservation, LifecyclePhase
from vm_lifecycle.services.terminate import (
    TerminationOrchestrator,
    TerminationResultCode,
    classify_result_code,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeServer:
    """One server whose state changes settle after a few reads."""

    def __init__(
        self,
        phase=LifecyclePhase.RUNNING,
        *,
        addresses=(),
        destroy_codes=(),
        settle_reads=2,
        terminates=True,
    ):
        self.phase = phase
        self.present = True
        self.addresses = tuple(addresses)
        self.destroy_codes = list(destroy_codes)
        self.settle_reads = settle_reads
        self.terminates = terminates
        self.pending: LifecyclePhase | None = None
        self.reads_left = 0
        self.calls: list[tuple] = []

    def _settle_to(self, phase):
        self.pending = phase
        self.reads_left = self.settle_reads

    def get(self, instance_id):
        if self.pending is not None:
            if self.reads_left:
                self.reads_left -= 1
            else:
                self.phase, self.pending = self.pending, None
                if self.phase == LifecyclePhase.TERMINATED:
                    self.present = False
        if not self.present:
            return None
        return InstanceObservation(
            instance_id=instance_id,
            name="web",
            phase=self.phase,
            public_addresses=self.addresses,
        )

    def release(self, address_id):
        self.calls.append(("release", address_id))

    def shutdown(self, server_id):
        self.calls.append(("shutdown", server_id))
        self.phase = LifecyclePhase.STOPPING
        self._settle_to(LifecyclePhase.STOPPED)
        return CommandResult(success=True, result_code="REASON_0")

    def destroy(self, server_id):
        self.calls.append(("delete", server_id))
        code = self.destroy_codes.pop(0) if self.destroy_codes else "REASON_0"
        if isinstance(code, Exception):
            raise code
        if code == "REASON_0":
            if self.terminates:
                self._settle_to(LifecyclePhase.TERMINATED)
            return CommandResult(success=True, result_code=code)
        return CommandResult(success=False, result_code=code, detail=f"refused with {code}")

    def clean(self, server_id):
        self.calls.append(("clean", server_id))
        return CommandResult(success=True, result_code="REASON_0")

    def command_names(self) -> list[str]:
        return [call[0] for call in self.calls]


def setup_function() -> None:
    metrics.reset()


def _orchestrator(server: FakeServer, clock: FakeClock | None = None):
    clock = clock or FakeClock()
    return TerminationOrchestrator(
        cast(Any, server),
        cast(Any, server),
        server,
        ConvergenceWaiter(clock=clock, sleep=clock.sleep),
        poll_interval_sec=30,
        stop_timeout_sec=20 * 60,
        stopped_wait_timeout_sec=10 * 60,
        destroy_timeout_sec=10 * 60,
        destroy_backoff_sec=30,
    )


def test_running_server_is_released_stopped_destroyed_in_order():
    server = FakeServer(addresses=("203.0.113.7",))
    assert _orchestrator(server).terminate("srv-1")
    assert server.calls == [
        ("release", "203.0.113.7"),
        ("shutdown", "srv-1"),
        ("delete", "srv-1"),
    ]
    assert server.get("srv-1") is None
    assert metrics.snapshot() == {"addresses_released_total": 1, "terminations_total": 1}


def test_stopped_server_is_not_shut_down_again():
    server = FakeServer(LifecyclePhase.STOPPED)
    assert _orchestrator(server).terminate("srv-1")
    assert server.command_names() == ["delete"]


def test_absent_server_is_a_no_op():
    server = FakeServer()
    server.present = False
    assert _orchestrator(server).terminate("srv-1")
    assert server.calls == []


def test_dependent_attachment_is_fatal_and_not_retried():
    server = FakeServer(LifecyclePhase.STOPPED, destroy_codes=["REASON_393"])
    with pytest.raises(FatalTerminationReason) as exc_info:
        _orchestrator(server).terminate("srv-1")
    assert exc_info.value.code == TerminationResultCode.ATTACHED_TO_DEPENDENT.value
    assert exc_info.value.result_code == "REASON_393"
    assert server.command_names() == ["delete"]
    assert metrics.snapshot()["terminations_refused_total"] == 1
    assert "terminations_total" not in metrics.snapshot()


@pytest.mark.parametrize("code", ["REASON_395", "REASON_100"])
def test_other_fatal_codes_are_not_retried(code):
    server = FakeServer(LifecyclePhase.STOPPED, destroy_codes=[code])
    with pytest.raises(FatalTerminationReason):
        _orchestrator(server).terminate("srv-1")
    assert server.command_names() == ["delete"]


def test_transient_refusal_backs_off_cleans_and_retries():
    clock = FakeClock()
    server = FakeServer(LifecyclePhase.STOPPED, destroy_codes=["REASON_20", "REASON_310"])
    assert _orchestrator(server, clock).terminate("srv-1")
    assert server.command_names() == ["delete", "clean", "delete", "clean", "delete"]
    assert clock.now >= 60


def test_transport_failure_during_destroy_is_retried():
    failure = RemoteCallFailed(
        command="delete", resource="server/srv-1", detail="unavailable", status_code=503
    )
    server = FakeServer(LifecyclePhase.STOPPED, destroy_codes=[failure])
    assert _orchestrator(server).terminate("srv-1")
    assert server.command_names() == ["delete", "clean", "delete"]


def test_destroy_never_accepted_reports_not_terminated():
    clock = FakeClock()
    server = FakeServer(LifecyclePhase.STOPPED, destroy_codes=["REASON_310"] * 100)
    assert not _orchestrator(server, clock).terminate("srv-1")
    assert server.command_names().count("delete") == 20
    assert clock.now == 10 * 60


def test_termination_wait_shares_the_destroy_deadline():
    clock = FakeClock()
    server = FakeServer(LifecyclePhase.STOPPED, terminates=False)
    assert not _orchestrator(server, clock).terminate("srv-1")
    assert server.command_names() == ["delete"]
    # destroy was accepted at t=0, so waiting for TERMINATED ends at the 10 minute mark
    assert clock.now == 10 * 60


def test_release_failure_propagates_before_stopping():
    class Unreleasable(FakeServer):
        def release(self, address_id):
            raise RemoteCallFailed(
                command="release",
                resource=f"address/{address_id}",
                detail="illegal access",
                result_code="REASON_100",
            )

    server = Unreleasable(addresses=("203.0.113.7",))
    with pytest.raises(RemoteCallFailed):
        _orchestrator(server).terminate("srv-1")
    assert server.calls == []


def test_cancelled_termination_stops_polling():
    cancel = threading.Event()
    cancel.set()
    server = FakeServer()
    with pytest.raises(OperationCancelled):
        _orchestrator(server).terminate("srv-1", cancel)
    assert "delete" not in server.command_names()


@pytest.mark.parametrize(
    "result, expected",
    [
        (CommandResult(success=True, result_code="REASON_0"), TerminationResultCode.SUCCESS),
        (CommandResult(success=True, result_code=None), TerminationResultCode.SUCCESS),
        (CommandResult(success=False, result_code=None), TerminationResultCode.UNKNOWN),
        (CommandResult(success=False, result_code="REASON_395"), TerminationResultCode.NOT_FOUND),
        (
            CommandResult(success=False, result_code="REASON_100"),
            TerminationResultCode.UNAUTHORIZED,
        ),
        (
            CommandResult(success=False, result_code="REASON_393"),
            TerminationResultCode.ATTACHED_TO_DEPENDENT,
        ),
        (CommandResult(success=False, result_code="REASON_20"), TerminationResultCode.UNKNOWN),
    ],
)
def test_classify_result_code(result, expected):
    assert classify_result_code(result) == expected
