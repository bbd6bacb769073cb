from __future__ import annotations

import shlex
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .settings import settings


def _argv(value: str | list[str] | None) -> list[str] | None:
    if value is None or isinstance(value, list):
        return value
    return shlex.split(value)


class HealthCheckModel(BaseModel):
    """Either an HTTP URL or a command run inside the container.

    With neither, the service counts as healthy while its container is running.
    """

    model_config = ConfigDict(extra="forbid")

    http: str | None = Field(None, description="URL that must answer 2xx")
    command: list[str] | None = Field(None, description="argv executed in the container; exit 0 = healthy")
    interval_s: float = Field(default_factory=lambda: settings.poll_interval_s, gt=0)
    timeout_s: float = Field(default_factory=lambda: settings.probe_timeout_s, gt=0)
    retries: int = Field(default_factory=lambda: settings.fail_threshold, ge=1, le=100)
    start_timeout_s: float = Field(default_factory=lambda: settings.start_timeout_s, gt=0)

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, v):
        return _argv(v)

    @model_validator(mode="after")
    def _single_probe(self) -> "HealthCheckModel":
        if self.http and self.command:
            raise ValueError("healthcheck takes either 'http' or 'command', not both")
        if self.http is not None and not self.http.startswith(("http://", "https://")):
            raise ValueError("healthcheck.http must be an http(s) URL")
        return self


class RestartModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: Literal["no", "on-failure", "always"] = "on-failure"
    max_retries: int = Field(3, ge=0, le=1000)
    backoff_s: float = Field(1.0, ge=0)
    backoff_max_s: float = Field(30.0, ge=0)

    @field_validator("mode", mode="before")
    @classmethod
    def _yaml_no(cls, v):
        # YAML 1.1 reads a bare `no` as False.
        if v is False:
            return "no"
        return v


class BuildModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    context: str
    dockerfile: str | None = None


class ServiceModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    image: str | None = Field(None, description="Docker image (name:tag)")
    build: BuildModel | None = None
    depends_on: list[str] = Field(default_factory=list)
    healthcheck: HealthCheckModel = Field(default_factory=HealthCheckModel)
    restart: RestartModel = Field(default_factory=RestartModel)
    environment: list[str] = Field(default_factory=list, description="Variable names passed through")
    secrets: list[str] = Field(default_factory=list, description="Variable names that must be set")
    ports: dict[int, int] = Field(default_factory=dict, description="container port -> host port")
    volumes: dict[str, str] = Field(default_factory=dict, description="host path (relative to the descriptor) -> container path")
    command: list[str] | None = None

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, v):
        return _argv(v)

    @field_validator("build", mode="before")
    @classmethod
    def _build_shorthand(cls, v):
        if isinstance(v, str):
            return {"context": v}
        return v

    @model_validator(mode="after")
    def _image_or_build(self) -> "ServiceModel":
        if (self.image is None) == (self.build is None):
            raise ValueError("service needs exactly one of 'image' or 'build'")
        if len(set(self.depends_on)) != len(self.depends_on):
            raise ValueError("depends_on lists a service twice")
        return self


class StackModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project: str = "stack"
    env_file: str = ".env"
    env_example: str = ".env.example"
    storage: list[str] = Field(default_factory=list)
    required_files: list[str] = Field(default_factory=list)
    services: dict[str, ServiceModel] = Field(..., min_length=1)


class ServiceStatusOut(BaseModel):
    name: str
    state: str
    message: str = ""
    consecutive_failures: int = 0
    restart_count: int = 0
    latency_ms: float | None = None
    updated_at: str = ""


class StackStatusOut(BaseModel):
    project: str
    services: list[ServiceStatusOut]
