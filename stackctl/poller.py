from __future__ import annotations

import time
from threading import Event, Lock, Thread, current_thread
from typing import Callable

from . import db
from .errors import ProbeExecutionError, RestartLimitExceeded, StackError
from .health import ContainerBackend, ProbeResult, probe
from .registry import ServiceSpec
from .runtime import RuntimeState, ServiceState, ServiceStatus

ProbeFn = Callable[[ServiceSpec, ContainerBackend], ProbeResult]
RestartFn = Callable[[ServiceSpec], None]


class HealthPoller:
    """One polling thread per service, each on its own timer.

    Probe results go through RuntimeState, so readers (the driver, the
    status API) only ever see snapshots and never wait on a probe.
    """

    def __init__(
        self,
        runtime: RuntimeState,
        backend: ContainerBackend,
        restart_fn: RestartFn | None = None,
        probe_fn: ProbeFn = probe,
    ):
        self.runtime = runtime
        self.backend = backend
        self.restart_fn = restart_fn
        self.probe_fn = probe_fn
        self._lock = Lock()
        self._threads: dict[str, tuple[Thread, Event]] = {}
        self._relaunched_at: dict[str, float] = {}

    # -- lifecycle -----------------------------------------------------

    def watch(self, spec: ServiceSpec) -> None:
        with self._lock:
            cur = self._threads.get(spec.name)
            if cur and cur[0].is_alive() and not cur[1].is_set():
                return
            stop_evt = Event()
            thr = Thread(target=self._loop, args=(spec, stop_evt), name=f"poll-{spec.name}", daemon=True)
            self._threads[spec.name] = (thr, stop_evt)
        thr.start()

    def unwatch(self, name: str, wait: bool = True) -> None:
        with self._lock:
            entry = self._threads.pop(name, None)
        if not entry:
            return
        thr, stop_evt = entry
        stop_evt.set()
        if wait and thr.is_alive() and thr is not current_thread():
            thr.join(timeout=5)

    def forget(self, name: str) -> None:
        """Drop the grace window left by an earlier poller restart."""
        with self._lock:
            self._relaunched_at.pop(name, None)

    def stop(self) -> None:
        for name in list(self._threads):
            self.unwatch(name)

    def watching(self) -> list[str]:
        with self._lock:
            return [n for n, (thr, evt) in self._threads.items() if thr.is_alive() and not evt.is_set()]

    # -- reads ---------------------------------------------------------

    def snapshot(self) -> dict[str, ServiceStatus]:
        return self.runtime.snapshot()

    def status(self, name: str) -> ServiceStatus:
        return self.runtime.get(name)

    # -- probing -------------------------------------------------------

    def _loop(self, spec: ServiceSpec, stop_evt: Event) -> None:
        db.log_event("INFO", "Health polling started", service_name=spec.name)
        while not stop_evt.is_set():
            try:
                st = self.check(spec, stop_evt)
            except Exception as e:
                db.log_event("ERROR", f"Health poll failed: {type(e).__name__}: {e}", service_name=spec.name)
            else:
                if st.state in {ServiceState.FAILED, ServiceState.STOPPED}:
                    break
            stop_evt.wait(spec.healthcheck.interval_s)
        db.log_event("INFO", "Health polling stopped", service_name=spec.name)

    def run_probe(self, spec: ServiceSpec) -> ProbeResult:
        """Probe once. A probe that cannot run counts as a failed check."""
        try:
            return self.probe_fn(spec, self.backend)
        except ProbeExecutionError as e:
            db.log_event("ERROR", f"Health check could not run: {e.message}", service_name=spec.name)
            return ProbeResult(False, f"probe error: {e.message}")

    def check(self, spec: ServiceSpec, stop_evt: Event | None = None) -> ServiceStatus:
        """Probe once and apply the result to the service's state machine."""
        res = self.run_probe(spec)
        prev, cur = self.runtime.record_probe(spec.name, res.ok, res.message, res.latency_ms)
        name = spec.name

        if res.ok:
            self._relaunched_at.pop(name, None)
            if prev.state == ServiceState.UNHEALTHY:
                db.log_event("INFO", "Service recovered", service_name=name)
            return cur

        threshold = spec.healthcheck.retries
        if prev.state == ServiceState.STARTING:
            # Startup failures only matter for restarts this poller issued;
            # the driver's startup timeout governs the others.
            started = self._relaunched_at.get(name)
            if started is None or time.monotonic() - started < spec.healthcheck.start_timeout_s:
                return cur
            self._relaunched_at.pop(name, None)
            cur = self.runtime.transition(name, ServiceState.UNHEALTHY, f"not healthy after restart: {res.message}")
            db.log_event("WARN", f"Restarted service never became healthy ({res.message})", service_name=name)
            return self._apply_restart_policy(spec, cur, stop_evt)

        if prev.state == ServiceState.HEALTHY and cur.consecutive_failures >= threshold:
            cur = self.runtime.transition(name, ServiceState.UNHEALTHY, res.message)
            db.log_event(
                "WARN", f"Service unhealthy after {cur.consecutive_failures} failed checks: {res.message}", service_name=name
            )
            return self._apply_restart_policy(spec, cur, stop_evt)

        if prev.state == ServiceState.UNHEALTHY and cur.consecutive_failures >= threshold:
            return self._apply_restart_policy(spec, cur, stop_evt, quiet=True)

        return cur

    # -- restart policy ------------------------------------------------

    def _apply_restart_policy(
        self, spec: ServiceSpec, cur: ServiceStatus, stop_evt: Event | None, quiet: bool = False
    ) -> ServiceStatus:
        policy = spec.restart
        name = spec.name
        if policy.mode == "no" or self.restart_fn is None:
            if not quiet:
                db.log_event("INFO", "Restart policy 'no': leaving service unhealthy", service_name=name)
            return cur

        if policy.mode == "on-failure" and cur.restart_count >= policy.max_retries:
            err = RestartLimitExceeded(
                f"gave up after {cur.restart_count} restarts (max {policy.max_retries})", service=name, state=cur.state.value
            )
            db.log_event("ERROR", str(err), service_name=name)
            return self.runtime.transition(name, ServiceState.FAILED, err.message)

        attempt = cur.restart_count + 1
        delay = policy.backoff(attempt)
        db.log_event("WARN", f"Restarting (attempt {attempt}) in {delay:.1f}s", service_name=name)
        if delay > 0:
            if stop_evt is not None:
                if stop_evt.wait(delay):
                    return self.runtime.get(name)
            else:
                time.sleep(delay)

        try:
            self.restart_fn(spec)
        except StackError as e:
            # Still unhealthy; the next tick decides again.
            db.log_event("ERROR", f"Restart attempt {attempt} failed: {e.message}", service_name=name)
            return self.runtime.update(name, restart_count=attempt, message=f"restart failed: {e.message}")
        self._relaunched_at[name] = time.monotonic()
        return self.runtime.get(name)