from __future__ import annotations

import os
import time
from dataclasses import replace
from threading import Event
from typing import Mapping, Protocol

from . import db
from .alerts import alert_for_transition
from .errors import (
    BackendError,
    ConfigurationError,
    DependencyNotHealthyError,
    StackError,
    StartupTimeoutError,
)
from .health import probe
from .poller import HealthPoller, ProbeFn
from .registry import ServiceSpec, Stack
from .resolver import dependents_of, resolve_order
from .runtime import TRANSITIONS, RuntimeState, ServiceState, ServiceStatus

ACTIVE_STATES = {ServiceState.STARTING, ServiceState.HEALTHY, ServiceState.UNHEALTHY}


class Backend(Protocol):
    def start(self, spec: ServiceSpec, env: dict[str, str]) -> None: ...

    def stop(self, spec: ServiceSpec) -> None: ...

    def is_running(self, spec: ServiceSpec) -> bool: ...

    def exec(self, spec: ServiceSpec, argv: list[str]) -> tuple[int, str]: ...


class Orchestrator:
    """Starts, stops and restarts the services of one stack.

    Start order comes from the resolver; a service is only started once
    every dependency is Healthy. A failure halts the failing service's
    subtree, independent services keep going.
    """

    def __init__(
        self,
        stack: Stack,
        backend: Backend,
        probe_fn: ProbeFn = probe,
        environ: Mapping[str, str] | None = None,
        wait_step_s: float = 0.05,
    ):
        self.stack = stack
        self.backend = backend
        self.environ = environ
        self.wait_step_s = wait_step_s
        self.runtime = RuntimeState(stack.names)
        self.poller = HealthPoller(self.runtime, backend, restart_fn=self._relaunch, probe_fn=probe_fn)
        self.errors: list[StackError] = []
        self.last_start_order: list[str] = []
        self._cancel = Event()
        self.runtime.subscribe(self._on_transition)

    @property
    def project(self) -> str:
        return self.stack.project

    # -- bookkeeping -----------------------------------------------------

    def _on_transition(self, prev: ServiceStatus, cur: ServiceStatus) -> None:
        db.save_status(self.project, cur)
        level = "ERROR" if cur.state == ServiceState.FAILED else "INFO"
        detail = f": {cur.message}" if cur.message else ""
        db.log_event(level, f"{prev.state.value} -> {cur.state.value}{detail}", service_name=cur.name)
        alert_for_transition(self.project, prev, cur)

    def load_last_known(self) -> None:
        """Seed the status table from the database (for a fresh CLI process)."""
        for name, st in db.load_statuses(self.project).items():
            if name in self.stack.names:
                self.runtime.seed(st)

    def refresh(self, names: list[str] | None = None) -> dict[str, ServiceStatus]:
        """Probe services that were last seen active and re-classify them."""
        for name in names or self.stack.names:
            st = self.runtime.get(name)
            if st.state not in ACTIVE_STATES:
                continue
            res = self.poller.run_probe(self.stack.get(name))
            state = ServiceState.HEALTHY if res.ok else ServiceState.UNHEALTHY
            cur = replace(st, state=state, message=res.message, latency_ms=res.latency_ms)
            self.runtime.seed(cur)
            db.save_status(self.project, cur)
        return self.runtime.snapshot()

    def snapshot(self) -> dict[str, ServiceStatus]:
        return self.runtime.snapshot()

    def cancel(self) -> None:
        """Abort pending startup waits. Healthy services are left running."""
        self._cancel.set()

    # -- validation ------------------------------------------------------

    def validate(self) -> list[str]:
        """Check the configuration before anything starts. Returns the start order."""
        order = resolve_order(self.stack.graph())
        missing = self.stack.missing_secrets(self._env())
        for name in order:
            if name in missing:
                raise ConfigurationError(f"required secret(s) not set: {', '.join(missing[name])}", service=name)
        return order

    def _env(self) -> Mapping[str, str]:
        return os.environ if self.environ is None else self.environ

    # -- operations ------------------------------------------------------

    def up(self) -> list[str]:
        """Start every service in dependency order.

        Returns the services that are Healthy afterwards. If anything failed
        the first error is raised once the independent services are up; the
        full list is on `self.errors`.
        """
        order = self.validate()
        graph = self.stack.graph()
        self.errors = []
        self._cancel.clear()
        attempted: list[str] = []
        healthy: list[str] = []
        db.log_event("INFO", f"up: start order {', '.join(order)}")

        for name in order:
            if self._cancel.is_set():
                break
            spec = self.stack.get(name)
            if self.runtime.state(name) == ServiceState.HEALTHY:
                # still running from an earlier run; keep polling it
                self.poller.watch(spec)
                attempted.append(name)
                healthy.append(name)
                continue
            blocker = self._unhealthy_dependency(spec)
            if blocker is not None:
                err = DependencyNotHealthyError(
                    name, blocker, self.runtime.state(blocker).value, state=self.runtime.state(name).value
                )
                self.errors.append(err)
                db.log_event("WARN", f"Not started: {err.message}", service_name=name)
                continue
            attempted.append(name)
            try:
                self._start(spec)
                self._wait_healthy(spec)
            except StackError as e:
                self._fail(spec, e)
                skipped = [d for d in dependents_of(graph, name) if d in order]
                if skipped:
                    db.log_event("WARN", f"Halting dependents: {', '.join(skipped)}", service_name=name)
                continue
            healthy.append(name)

        if attempted:
            self.last_start_order = attempted
            db.record_start_order(self.project, attempted)
        if self.errors:
            raise self.errors[0]
        return healthy

    def down(self) -> list[str]:
        """Stop services in the reverse of the most recent start order.

        Services still active but missing from that order (started by an
        earlier run that was later cut short) are stopped first.
        """
        order = list(self.last_start_order or db.last_start_order(self.project))
        try:
            known = resolve_order(self.stack.graph())
        except ConfigurationError:
            known = list(self.stack.names)
        if not order:
            order = known
        else:
            order += [n for n in known if n not in order and self.runtime.state(n) in ACTIVE_STATES]
        stop_order = list(reversed(order))
        self.errors = []
        self.cancel()
        db.log_event("INFO", f"down: stop order {', '.join(stop_order)}")
        for name in stop_order:
            if name not in self.stack.names:
                db.log_event("WARN", "No longer in the descriptor; skipped", service_name=name)
                continue
            spec = self.stack.get(name)
            self.poller.unwatch(name)
            try:
                self.backend.stop(spec)
            except StackError as e:
                if e.service is None:
                    e.service = name
                self.errors.append(e)
                db.log_event("ERROR", f"Stop failed: {e.message}", service_name=name)
                continue
            self.runtime.transition(name, ServiceState.STOPPED, "stopped")
        if self.errors:
            raise self.errors[0]
        return stop_order

    def restart(self, name: str) -> ServiceStatus:
        """Restart one service. Dependents are left alone."""
        spec = self.stack.get(name)
        missing = self.stack.missing_secrets(self._env()).get(name)
        if missing:
            raise ConfigurationError(f"required secret(s) not set: {', '.join(missing)}", service=name)
        blocker = self._unhealthy_dependency(spec)
        if blocker is not None:
            raise DependencyNotHealthyError(
                name, blocker, self.runtime.state(blocker).value, state=self.runtime.state(name).value
            )
        self._cancel.clear()
        self.poller.unwatch(name)
        db.log_event("INFO", "Restart requested", service_name=name)
        try:
            self.backend.stop(spec)
        except StackError as e:
            # Nothing changed; keep watching whatever is still running.
            if self.runtime.state(name) in ACTIVE_STATES:
                self.poller.watch(spec)
            if e.service is None:
                e.service = name
            raise
        try:
            self._start(spec)
            self._wait_healthy(spec)
        except StackError as e:
            self._fail(spec, e)
            raise
        return self.runtime.get(name)

    def supervise(self) -> None:
        """Block until cancel(); the pollers keep applying restart policies."""
        self._cancel.clear()
        while not self._cancel.wait(1.0):
            pass

    def shutdown(self) -> None:
        """Stop polling; containers are left as they are."""
        self.cancel()
        self.poller.stop()

    # -- internals -------------------------------------------------------

    def _unhealthy_dependency(self, spec: ServiceSpec) -> str | None:
        for dep in spec.depends_on:
            if self.runtime.state(dep) != ServiceState.HEALTHY:
                return dep
        return None

    def _start(self, spec: ServiceSpec) -> None:
        blocker = self._unhealthy_dependency(spec)
        if blocker is not None:
            raise DependencyNotHealthyError(spec.name, blocker, self.runtime.state(blocker).value)
        self.poller.forget(spec.name)
        self.runtime.transition(spec.name, ServiceState.STARTING, "starting", consecutive_failures=0, restart_count=0)
        self.backend.start(spec, self.stack.environment_for(spec, self._env()))
        self.poller.watch(spec)

    def _wait_healthy(self, spec: ServiceSpec) -> None:
        timeout = spec.healthcheck.start_timeout_s
        deadline = time.monotonic() + timeout
        while True:
            st = self.runtime.get(spec.name)
            if st.state == ServiceState.HEALTHY:
                return
            if st.state == ServiceState.FAILED:
                raise StartupTimeoutError(f"failed while starting: {st.message}", service=spec.name, state=st.state.value)
            if time.monotonic() >= deadline:
                detail = f" (last check: {st.message})" if st.message and st.message != "starting" else ""
                raise StartupTimeoutError(
                    f"not healthy after {timeout:g}s{detail}", service=spec.name, state=st.state.value
                )
            if self._cancel.wait(self.wait_step_s):
                raise StartupTimeoutError("startup wait cancelled", service=spec.name, state=st.state.value)

    def _fail(self, spec: ServiceSpec, err: StackError) -> None:
        self.poller.unwatch(spec.name)
        if err.service is None:
            err.service = spec.name
        if err.state is None:
            err.state = self.runtime.state(spec.name).value
        if err not in self.errors:
            self.errors.append(err)
        if ServiceState.FAILED in TRANSITIONS[self.runtime.state(spec.name)]:
            self.runtime.transition(spec.name, ServiceState.FAILED, err.message)

    def _relaunch(self, spec: ServiceSpec) -> None:
        """Restart issued by the health poller; does not wait for health."""
        name = spec.name
        blocker = self._unhealthy_dependency(spec)
        if blocker is not None:
            raise DependencyNotHealthyError(name, blocker, self.runtime.state(blocker).value)
        try:
            self.backend.stop(spec)
        except BackendError as e:
            db.log_event("WARN", f"Stop before restart failed: {e.message}", service_name=name)
        cur = self.runtime.get(name)
        self.runtime.transition(
            name, ServiceState.STARTING, "restarting", restart_count=cur.restart_count + 1, consecutive_failures=0
        )
        try:
            self.backend.start(spec, self.stack.environment_for(spec, self._env()))
        except StackError as e:
            self.runtime.transition(name, ServiceState.UNHEALTHY, f"restart failed: {e.message}")
            raise
