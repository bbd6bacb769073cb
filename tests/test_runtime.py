import threading

import pytest

from stackctl.errors import InvalidTransition
from stackctl.runtime import RuntimeState, ServiceState


def test_new_services_are_pending():
    rt = RuntimeState(["db", "api"])
    assert {n: s.state for n, s in rt.snapshot().items()} == {"db": ServiceState.PENDING, "api": ServiceState.PENDING}


def test_happy_path_transitions():
    rt = RuntimeState(["db"])
    rt.transition("db", ServiceState.STARTING)
    _, cur = rt.record_probe("db", True, "Healthy", 1.5)
    assert cur.state == ServiceState.HEALTHY
    assert cur.latency_ms == 1.5
    rt.transition("db", ServiceState.STOPPED)
    assert rt.state("db") == ServiceState.STOPPED


@pytest.mark.parametrize(
    "path",
    [
        [ServiceState.HEALTHY],
        [ServiceState.UNHEALTHY],
        [ServiceState.STARTING, ServiceState.HEALTHY, ServiceState.PENDING],
        [ServiceState.STOPPED, ServiceState.HEALTHY],
    ],
)
def test_skipping_states_is_rejected(path):
    rt = RuntimeState(["db"])
    with pytest.raises(InvalidTransition) as exc:
        for st in path:
            rt.transition("db", st)
    assert exc.value.service == "db"


def test_failed_probe_only_counts():
    rt = RuntimeState(["db"])
    rt.transition("db", ServiceState.STARTING)
    rt.record_probe("db", True, "Healthy", None)
    for i in range(1, 4):
        _, cur = rt.record_probe("db", False, "HTTP 503", None)
        assert cur.state == ServiceState.HEALTHY
        assert cur.consecutive_failures == i
    _, cur = rt.record_probe("db", True, "Healthy", None)
    assert cur.consecutive_failures == 0


def test_probe_does_not_revive_pending_or_failed():
    rt = RuntimeState(["db"])
    _, cur = rt.record_probe("db", True, "Healthy", None)
    assert cur.state == ServiceState.PENDING
    rt.transition("db", ServiceState.FAILED)
    _, cur = rt.record_probe("db", True, "Healthy", None)
    assert cur.state == ServiceState.FAILED


def test_snapshot_is_a_copy():
    rt = RuntimeState(["db"])
    snap = rt.snapshot()
    rt.transition("db", ServiceState.STARTING)
    assert snap["db"].state == ServiceState.PENDING
    assert rt.snapshot()["db"].state == ServiceState.STARTING


def test_listeners_see_state_changes_only():
    rt = RuntimeState(["db"])
    seen = []
    rt.subscribe(lambda prev, cur: seen.append((prev.state, cur.state)))
    rt.transition("db", ServiceState.STARTING)
    rt.record_probe("db", False, "No response", None)
    rt.record_probe("db", True, "Healthy", None)
    rt.update("db", restart_count=2)
    assert seen == [
        (ServiceState.PENDING, ServiceState.STARTING),
        (ServiceState.STARTING, ServiceState.HEALTHY),
    ]


def test_concurrent_probes_on_one_service_are_serialized():
    rt = RuntimeState(["db"])
    rt.transition("db", ServiceState.STARTING)
    rt.record_probe("db", True, "Healthy", None)

    def fail_many():
        for _ in range(500):
            rt.record_probe("db", False, "x", None)

    threads = [threading.Thread(target=fail_many) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert rt.get("db").consecutive_failures == 2000
