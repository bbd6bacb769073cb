from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .errors import ConfigurationError, CycleError
from .models import ServiceModel, StackModel


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-_]{0,62}$")
ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise ConfigurationError(
            "Invalid service name. Use lowercase letters/numbers, '-' and '_', starting with a letter (max 63 chars).",
            service=name,
        )


@dataclass(frozen=True)
class HealthCheck:
    kind: str  # http|command|running
    target: str | tuple[str, ...] | None
    interval_s: float
    timeout_s: float
    retries: int
    start_timeout_s: float


@dataclass(frozen=True)
class RestartPolicy:
    mode: str  # no|on-failure|always
    max_retries: int
    backoff_s: float
    backoff_max_s: float

    def backoff(self, attempt: int) -> float:
        """Delay before restart attempt `attempt` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.backoff_s * (2 ** (attempt - 1)), self.backoff_max_s)


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image: str | None
    build_context: str | None
    dockerfile: str | None
    depends_on: tuple[str, ...]
    healthcheck: HealthCheck
    restart: RestartPolicy
    environment: tuple[str, ...] = ()
    secrets: tuple[str, ...] = ()
    ports: tuple[tuple[int, int], ...] = ()
    volumes: tuple[tuple[str, str], ...] = ()
    command: tuple[str, ...] | None = None

    @property
    def image_ref(self) -> str:
        """Image to run: the declared one, or the tag a build produces."""
        return self.image or f"stackctl-{self.name}:latest"


@dataclass(frozen=True)
class Stack:
    project: str
    services: tuple[ServiceSpec, ...]
    env_file: str = ".env"
    env_example: str = ".env.example"
    storage: tuple[str, ...] = ()
    required_files: tuple[str, ...] = ()
    base_dir: str = "."
    _by_name: dict[str, ServiceSpec] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._by_name.update({s.name: s for s in self.services})

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.services]

    def get(self, name: str) -> ServiceSpec:
        try:
            return self._by_name[name]
        except KeyError:
            raise ConfigurationError("unknown service", service=name) from None

    def graph(self) -> dict[str, tuple[str, ...]]:
        """name -> dependencies, in declaration order."""
        return {s.name: s.depends_on for s in self.services}

    def missing_secrets(self, environ: Mapping[str, str] | None = None) -> dict[str, list[str]]:
        env = os.environ if environ is None else environ
        out: dict[str, list[str]] = {}
        for s in self.services:
            missing = [k for k in s.secrets if not env.get(k)]
            if missing:
                out[s.name] = missing
        return out

    def environment_for(self, spec: ServiceSpec, environ: Mapping[str, str] | None = None) -> dict[str, str]:
        """Pass-through variables that are present. Values are not interpreted."""
        env = os.environ if environ is None else environ
        return {k: env[k] for k in (*spec.environment, *spec.secrets) if k in env}

    def path(self, rel: str) -> Path:
        return Path(self.base_dir) / rel


def _spec_from_model(name: str, m: ServiceModel) -> ServiceSpec:
    hc = m.healthcheck
    if hc.http:
        kind, target = "http", hc.http
    elif hc.command:
        kind, target = "command", tuple(hc.command)
    else:
        kind, target = "running", None
    for var in (*m.environment, *m.secrets):
        if not ENV_NAME_RE.match(var):
            raise ConfigurationError(f"invalid environment variable name {var!r}", service=name)
    return ServiceSpec(
        name=name,
        image=m.image,
        build_context=m.build.context if m.build else None,
        dockerfile=m.build.dockerfile if m.build else None,
        depends_on=tuple(m.depends_on),
        healthcheck=HealthCheck(
            kind=kind,
            target=target,
            interval_s=hc.interval_s,
            timeout_s=hc.timeout_s,
            retries=hc.retries,
            start_timeout_s=hc.start_timeout_s,
        ),
        restart=RestartPolicy(
            mode=m.restart.mode,
            max_retries=m.restart.max_retries,
            backoff_s=m.restart.backoff_s,
            backoff_max_s=m.restart.backoff_max_s,
        ),
        environment=tuple(m.environment),
        secrets=tuple(m.secrets),
        ports=tuple(sorted(m.ports.items())),
        volumes=tuple(m.volumes.items()),
        command=tuple(m.command) if m.command else None,
    )


def _validation_error(e: ValidationError) -> ConfigurationError:
    err = e.errors()[0]
    loc = [str(x) for x in err.get("loc", ())]
    service = None
    if len(loc) >= 2 and loc[0] == "services":
        service = loc[1]
        loc = loc[2:]
    msg = err.get("msg", "invalid value")
    if loc:
        msg = f"{'.'.join(loc)}: {msg}"
    return ConfigurationError(msg, service=service)


def stack_from_mapping(data: Any, base_dir: str = ".") -> Stack:
    """Validate a parsed descriptor and build the immutable Stack."""
    if not isinstance(data, dict):
        raise ConfigurationError("descriptor must be a mapping with a 'services' key")
    try:
        model = StackModel.model_validate(data)
    except ValidationError as e:
        raise _validation_error(e) from e

    specs: list[ServiceSpec] = []
    for name, svc in model.services.items():
        validate_service_name(name)
        specs.append(_spec_from_model(name, svc))

    known = {s.name for s in specs}
    for s in specs:
        for dep in s.depends_on:
            if dep == s.name:
                raise CycleError([s.name])
            if dep not in known:
                raise ConfigurationError(f"unknown dependency '{dep}'", service=s.name)

    return Stack(
        project=model.project,
        services=tuple(specs),
        env_file=model.env_file,
        env_example=model.env_example,
        storage=tuple(model.storage),
        required_files=tuple(model.required_files),
        base_dir=base_dir,
    )


def load_descriptor(path: str | os.PathLike[str]) -> Stack:
    p = Path(path)
    if not p.is_file():
        raise ConfigurationError(f"descriptor not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse {p}: {e}") from e
    return stack_from_mapping(data, base_dir=str(p.resolve().parent))
