"""Workspace bootstrap and pre-start checks.

`init` prepares a checkout (storage directories, `.env` from the example
file); `check` only reports. Neither touches running containers.
"""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import Mapping

from dotenv import load_dotenv

from .docker_ops import docker_version
from .errors import BackendError, ConfigurationError
from .registry import Stack


@dataclass(frozen=True)
class Check:
    ok: bool
    message: str


def check_docker() -> str:
    """Docker daemon version, or BackendError when the daemon is unreachable."""
    version = docker_version()
    if version is None:
        raise BackendError("Docker daemon is not running (or not installed).")
    return version


def ensure_storage(stack: Stack) -> tuple[list[str], list[str]]:
    """Create missing storage directories. Returns (created, existing)."""
    created: list[str] = []
    existing: list[str] = []
    for rel in stack.storage:
        p = stack.path(rel)
        if p.is_dir():
            existing.append(rel)
            continue
        p.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(p, 0o775)
        except OSError:
            pass
        created.append(rel)
    return created, existing


def ensure_env_file(stack: Stack) -> bool:
    """Copy the example env file into place. Returns True when a file was created."""
    target = stack.path(stack.env_file)
    if target.exists():
        return False
    example = stack.path(stack.env_example)
    if not example.is_file():
        raise ConfigurationError(f"{stack.env_example} not found; cannot create {stack.env_file}")
    shutil.copyfile(example, target)
    return True


def load_env(stack: Stack) -> bool:
    """Load the stack's env file into os.environ; real environment variables win."""
    path = stack.path(stack.env_file)
    if not path.is_file():
        return False
    return load_dotenv(path, override=False)


def missing_files(stack: Stack) -> list[str]:
    return [rel for rel in stack.required_files if not stack.path(rel).is_file()]


def run_checks(stack: Stack, environ: Mapping[str, str] | None = None) -> list[Check]:
    """Everything `check` reports, in the order it reports it."""
    out: list[Check] = []
    try:
        out.append(Check(True, f"Docker is installed and running (version: {check_docker()})"))
    except BackendError as e:
        out.append(Check(False, e.message))

    env_path = stack.path(stack.env_file)
    out.append(Check(env_path.is_file(), f"{stack.env_file} {'found' if env_path.is_file() else 'missing'}"))

    for rel in stack.storage:
        ok = stack.path(rel).is_dir()
        out.append(Check(ok, f"storage {rel} {'exists' if ok else 'missing'}"))

    missing = set(missing_files(stack))
    for rel in stack.required_files:
        out.append(Check(rel not in missing, f"{rel} {'missing' if rel in missing else 'found'}"))

    for service, names in stack.missing_secrets(environ).items():
        out.append(Check(False, f"{service}: required secret(s) not set: {', '.join(names)}"))
    return out
