from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from .errors import ProbeExecutionError
from .registry import ServiceSpec


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    latency_ms: float | None = None


class ContainerBackend(Protocol):
    def is_running(self, spec: ServiceSpec) -> bool: ...

    def exec(self, spec: ServiceSpec, argv: list[str]) -> tuple[int, str]: ...


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000.0, 2)


def check_http(url: str, timeout_s: float = 2.0) -> ProbeResult:
    """Call a service health endpoint.

    Any 2xx answer is healthy, unless it is a JSON object whose "status"
    says otherwise (e.g. {"status": "degraded"}).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
        raise ProbeExecutionError(f"bad health URL {url!r}: {e}") from e
    except (httpx.ConnectError, httpx.TimeoutException):
        return ProbeResult(False, "No response", _elapsed_ms(start))
    except httpx.HTTPError as e:
        return ProbeResult(False, f"Error: {type(e).__name__}: {e}", _elapsed_ms(start))

    latency_ms = _elapsed_ms(start)
    if not 200 <= resp.status_code < 300:
        return ProbeResult(False, f"HTTP {resp.status_code}", latency_ms)
    try:
        data = resp.json()
    except ValueError:
        return ProbeResult(True, f"HTTP {resp.status_code}", latency_ms)
    if isinstance(data, dict) and "status" in data:
        status = str(data["status"]).lower()
        if status not in {"healthy", "ok", "up", "pass", "available"}:
            return ProbeResult(False, f"Unhealthy payload: {data!r}", latency_ms)
    return ProbeResult(True, "Healthy", latency_ms)


def check_command(backend: ContainerBackend, spec: ServiceSpec, argv: list[str]) -> ProbeResult:
    start = time.time()
    code, output = backend.exec(spec, argv)
    latency_ms = _elapsed_ms(start)
    if code == 0:
        return ProbeResult(True, "Healthy", latency_ms)
    tail = output.strip().splitlines()[-1:] if output else []
    detail = f": {tail[0][:200]}" if tail else ""
    return ProbeResult(False, f"exit {code}{detail}", latency_ms)


def check_running(backend: ContainerBackend, spec: ServiceSpec) -> ProbeResult:
    start = time.time()
    if backend.is_running(spec):
        return ProbeResult(True, "Running", _elapsed_ms(start))
    return ProbeResult(False, "Container not running", _elapsed_ms(start))


def probe(spec: ServiceSpec, backend: ContainerBackend) -> ProbeResult:
    """Run the service's health check once.

    Raises ProbeExecutionError when the check itself cannot run; an
    unhealthy answer is a normal ProbeResult.
    """
    hc = spec.healthcheck
    try:
        if hc.kind == "http":
            return check_http(str(hc.target), timeout_s=hc.timeout_s)
        if hc.kind == "command":
            return check_command(backend, spec, list(hc.target or ()))
        return check_running(backend, spec)
    except ProbeExecutionError as e:
        if e.service is None:
            e.service = spec.name
        raise
