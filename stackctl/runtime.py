from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Callable, Iterable

from .errors import InvalidTransition


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ServiceState(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    FAILED = "failed"


S = ServiceState

TRANSITIONS: dict[ServiceState, frozenset[ServiceState]] = {
    S.PENDING: frozenset({S.STARTING, S.STOPPED, S.FAILED}),
    S.STARTING: frozenset({S.HEALTHY, S.UNHEALTHY, S.FAILED, S.STOPPED}),
    S.HEALTHY: frozenset({S.UNHEALTHY, S.STOPPED, S.STARTING}),
    S.UNHEALTHY: frozenset({S.HEALTHY, S.STARTING, S.FAILED, S.STOPPED}),
    S.STOPPED: frozenset({S.STARTING, S.PENDING}),
    S.FAILED: frozenset({S.STARTING, S.STOPPED, S.PENDING}),
}


@dataclass(frozen=True)
class ServiceStatus:
    name: str
    state: ServiceState = ServiceState.PENDING
    message: str = ""
    consecutive_failures: int = 0
    restart_count: int = 0
    latency_ms: float | None = None
    updated_at: str = ""

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "message": self.message,
            "consecutive_failures": self.consecutive_failures,
            "restart_count": self.restart_count,
            "latency_ms": self.latency_ms,
            "updated_at": self.updated_at,
        }


Listener = Callable[[ServiceStatus, ServiceStatus], None]


class _Slot:
    __slots__ = ("lock", "status")

    def __init__(self, status: ServiceStatus) -> None:
        self.lock = Lock()
        self.status = status


class RuntimeState:
    """Per-service status records.

    Writers serialize on the service's own lock and swap in a new immutable
    record. Readers just grab the current record, so a reader never waits
    on a slow probe or a start in progress.
    """

    def __init__(self, names: Iterable[str]) -> None:
        self._slots: dict[str, _Slot] = {n: _Slot(ServiceStatus(name=n, updated_at=utc_now())) for n in names}
        self._listeners: list[Listener] = []

    def subscribe(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def names(self) -> list[str]:
        return list(self._slots)

    def get(self, name: str) -> ServiceStatus:
        return self._slots[name].status

    def state(self, name: str) -> ServiceState:
        return self._slots[name].status.state

    def snapshot(self) -> dict[str, ServiceStatus]:
        return {n: slot.status for n, slot in self._slots.items()}

    def seed(self, status: ServiceStatus) -> None:
        """Load a last-known record (e.g. from the database) without transition checks."""
        slot = self._slots[status.name]
        with slot.lock:
            slot.status = status

    def transition(self, name: str, to: ServiceState, message: str = "", **changes) -> ServiceStatus:
        slot = self._slots[name]
        with slot.lock:
            prev = slot.status
            if to != prev.state and to not in TRANSITIONS[prev.state]:
                raise InvalidTransition(
                    f"cannot go from {prev.state.value} to {to.value}", service=name, state=prev.state.value
                )
            cur = replace(prev, state=to, message=message or prev.message, updated_at=utc_now(), **changes)
            slot.status = cur
        if cur.state != prev.state:
            self._notify(prev, cur)
        return cur

    def update(self, name: str, **changes) -> ServiceStatus:
        """Change counters/message without a state change."""
        slot = self._slots[name]
        with slot.lock:
            cur = replace(slot.status, updated_at=utc_now(), **changes)
            slot.status = cur
        return cur

    def record_probe(self, name: str, ok: bool, message: str, latency_ms: float | None) -> tuple[ServiceStatus, ServiceStatus]:
        """Apply one probe result. Returns (previous, current).

        Success moves Starting/Unhealthy to Healthy and resets the failure
        count. Failure only bumps the count; the poller decides what the
        count means.
        """
        slot = self._slots[name]
        with slot.lock:
            prev = slot.status
            if ok:
                state = S.HEALTHY if prev.state in {S.STARTING, S.UNHEALTHY, S.HEALTHY} else prev.state
                cur = replace(prev, state=state, message=message, consecutive_failures=0, latency_ms=latency_ms, updated_at=utc_now())
            else:
                cur = replace(
                    prev,
                    message=message,
                    consecutive_failures=prev.consecutive_failures + 1,
                    latency_ms=latency_ms,
                    updated_at=utc_now(),
                )
            slot.status = cur
        if cur.state != prev.state:
            self._notify(prev, cur)
        return prev, cur

    def _notify(self, prev: ServiceStatus, cur: ServiceStatus) -> None:
        for fn in list(self._listeners):
            fn(prev, cur)
