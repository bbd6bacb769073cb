import os as _os
import sys

import pytest

# Ensure project root is importable (so `import cli` works without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from stackctl import db  # noqa: E402
from stackctl.driver import Orchestrator  # noqa: E402
from stackctl.errors import BackendError  # noqa: E402
from stackctl.registry import stack_from_mapping  # noqa: E402
from stackctl.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "stackctl.db")))
    db.init_db()
    yield


class FakeBackend:
    """In-memory container runtime.

    `broken` services start but never report running; `fail_start`
    services raise on start.
    """

    def __init__(self):
        self.running: set[str] = set()
        self.broken: set[str] = set()
        self.fail_start: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.envs: dict[str, dict[str, str]] = {}

    def start(self, spec, env):
        self.calls.append(("start", spec.name))
        if spec.name in self.fail_start:
            raise BackendError("image not found", service=spec.name)
        self.envs[spec.name] = dict(env)
        self.running.add(spec.name)

    def stop(self, spec):
        self.calls.append(("stop", spec.name))
        self.running.discard(spec.name)

    def is_running(self, spec):
        return spec.name in self.running and spec.name not in self.broken

    def exec(self, spec, argv):
        if self.is_running(spec):
            return 0, "ok"
        return 1, "not ready"

    def started(self):
        return [n for op, n in self.calls if op == "start"]

    def stopped(self):
        return [n for op, n in self.calls if op == "stop"]


@pytest.fixture
def backend():
    return FakeBackend()


def _stack_of(graph, project="test", start_timeout_s=2.0, **service_overrides):
    """Build a Stack from {name: [deps]} with fast health checks."""
    services = {}
    for name, deps in graph.items():
        svc = {
            "image": f"example/{name}:latest",
            "depends_on": list(deps),
            "healthcheck": {"interval_s": 0.01, "start_timeout_s": start_timeout_s, "retries": 2},
            "restart": {"mode": "on-failure", "max_retries": 2, "backoff_s": 0},
        }
        svc.update(service_overrides.get(name, {}))
        services[name] = svc
    return stack_from_mapping({"project": project, "services": services})


@pytest.fixture
def stack_of():
    return _stack_of


@pytest.fixture
def make_orch(backend):
    """Orchestrator factory; stops every poller thread at teardown."""
    made = []

    def _make(stack, **kwargs):
        kwargs.setdefault("environ", {})
        kwargs.setdefault("wait_step_s", 0.01)
        orch = Orchestrator(stack, backend, **kwargs)
        made.append(orch)
        return orch

    yield _make
    for orch in made:
        orch.shutdown()
