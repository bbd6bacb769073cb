from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from .db import log_event
from .errors import BackendError, ProbeExecutionError
from .registry import ServiceSpec
from .settings import settings


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def docker_version() -> str | None:
    try:
        return str(_client().version().get("Version", "unknown"))
    except DockerException:
        return None


def container_name(project: str, service: str) -> str:
    return f"{project}-{service}"


def ensure_network(name: str | None = None) -> None:
    network = name or settings.docker_network
    c = _client()
    try:
        c.networks.get(network)
    except NotFound:
        c.networks.create(network, driver="bridge")
        log_event("INFO", f"Created docker network '{network}'.")


def build_image(spec: ServiceSpec, base_dir: str) -> str:
    """Build the service image from its build context and return the tag."""
    context = Path(base_dir) / (spec.build_context or ".")
    if not context.is_dir():
        raise BackendError(f"build context not found: {context}", service=spec.name)
    kwargs: dict[str, Any] = {"path": str(context), "tag": spec.image_ref, "rm": True}
    if spec.dockerfile:
        kwargs["dockerfile"] = spec.dockerfile
    try:
        _client().images.build(**kwargs)
    except (BuildError, APIError) as e:
        raise BackendError(f"image build failed: {e}", service=spec.name) from e
    log_event("INFO", f"Built image {spec.image_ref} from {context}", service_name=spec.name)
    return spec.image_ref


def create_service_container(
    project: str,
    spec: ServiceSpec,
    env: dict[str, str] | None = None,
    base_dir: str = ".",
    network: str | None = None,
) -> ContainerRef:
    """Create and start the container for one service.

    Containers are labeled so they can be re-discovered after a restart of
    the orchestrator; an existing container with the same name is replaced.
    """
    if not docker_available():
        raise BackendError("Docker is not available. Start the docker daemon and try again.", service=spec.name)
    network = network or settings.docker_network
    ensure_network(network)
    if spec.build_context:
        build_image(spec, base_dir)

    name = container_name(project, spec.name)
    remove_container(name)

    labels: dict[str, str] = {
        "stackctl.project": project,
        "stackctl.service": spec.name,
    }
    c = _client()
    try:
        container = c.containers.run(
            spec.image_ref,
            command=list(spec.command) if spec.command else None,
            detach=True,
            name=name,
            hostname=spec.name,
            environment=env or {},
            network=network,
            labels=labels,
            ports={f"{cport}/tcp": hport for cport, hport in spec.ports},
            volumes={str((Path(base_dir) / host).resolve()): {"bind": target, "mode": "rw"} for host, target in spec.volumes},
            # Restart decisions belong to the health poller, not to the docker daemon.
            restart_policy={"Name": "no"},
        )
    except ImageNotFound as e:
        raise BackendError(f"image not found: {spec.image_ref}", service=spec.name) from e
    except APIError as e:
        raise BackendError(f"container start failed: {e.explanation or e}", service=spec.name) from e

    log_event("INFO", f"Started container {name} from image {spec.image_ref}", service_name=spec.name)
    return ContainerRef(id=container.id, name=name)


def stop_container(name: str, timeout_s: int | None = None) -> bool:
    """Stop a container by name. Returns False when it does not exist."""
    c = _client()
    try:
        cont = c.containers.get(name)
    except NotFound:
        return False
    cont.stop(timeout=settings.stop_timeout_s if timeout_s is None else timeout_s)
    return True


def remove_container(name: str, force: bool = True) -> None:
    c = _client()
    try:
        cont = c.containers.get(name)
        cont.remove(force=force)
    except NotFound:
        return


def container_is_running(name: str) -> bool:
    c = _client()
    try:
        cont = c.containers.get(name)
        cont.reload()
        return cont.status == "running"
    except NotFound:
        return False


def exec_in_container(name: str, argv: list[str]) -> tuple[int, str]:
    """Run a command inside a running container. Returns (exit_code, output)."""
    try:
        cont = _client().containers.get(name)
        res = cont.exec_run(argv, stdout=True, stderr=True)
    except NotFound as e:
        raise ProbeExecutionError("container does not exist", service=name) from e
    except DockerException as e:
        raise ProbeExecutionError(f"exec failed: {e}", service=name) from e
    output = res.output.decode("utf-8", errors="replace") if isinstance(res.output, bytes) else str(res.output or "")
    if res.exit_code in (126, 127):
        # 126: not executable, 127: not found. The check itself could not run.
        raise ProbeExecutionError(f"health command could not run: {output.strip()[:200]}", service=name)
    return int(res.exit_code or 0), output


class DockerBackend:
    """Container operations for one project, as used by the driver and poller."""

    def __init__(self, project: str, base_dir: str = ".", network: str | None = None):
        self.project = project
        self.base_dir = base_dir
        self.network = network or settings.docker_network

    def start(self, spec: ServiceSpec, env: dict[str, str]) -> None:
        try:
            create_service_container(self.project, spec, env=env, base_dir=self.base_dir, network=self.network)
        except DockerException as e:
            raise BackendError(f"start failed: {e}", service=spec.name) from e

    def stop(self, spec: ServiceSpec) -> None:
        name = container_name(self.project, spec.name)
        try:
            stop_container(name)
            remove_container(name)
        except DockerException as e:
            raise BackendError(f"stop failed: {e}", service=spec.name) from e

    def is_running(self, spec: ServiceSpec) -> bool:
        try:
            return container_is_running(container_name(self.project, spec.name))
        except DockerException as e:
            raise ProbeExecutionError(f"cannot inspect container: {e}", service=spec.name) from e

    def exec(self, spec: ServiceSpec, argv: list[str]) -> tuple[int, str]:
        try:
            return exec_in_container(container_name(self.project, spec.name), argv)
        except ProbeExecutionError as e:
            raise ProbeExecutionError(e.message, service=spec.name) from e
