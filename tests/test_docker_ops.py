from types import SimpleNamespace

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from stackctl import docker_ops
from stackctl.driver import Orchestrator
from stackctl.errors import BackendError, ProbeExecutionError
from stackctl.registry import stack_from_mapping
from stackctl.runtime import ServiceState


class FakeContainer:
    def __init__(self, name, status="running", exec_result=(0, b"ok")):
        self.id = f"id-{name}"
        self.name = name
        self.status = status
        self.exec_result = exec_result
        self.stopped = False
        self.removed = False

    def reload(self):
        pass

    def exec_run(self, argv, stdout=True, stderr=True):
        code, out = self.exec_result
        return SimpleNamespace(exit_code=code, output=out)

    def stop(self, timeout=None):
        self.stopped = True
        self.status = "exited"

    def remove(self, force=False):
        self.removed = True


class FakeContainers:
    def __init__(self):
        self.by_name = {}
        self.run_kwargs = None
        self.missing_images = set()

    def get(self, name):
        if name not in self.by_name:
            raise NotFound(f"no such container: {name}")
        return self.by_name[name]

    def run(self, image, **kwargs):
        if image in self.missing_images:
            raise ImageNotFound(f"no such image: {image}")
        self.run_kwargs = dict(kwargs, image=image)
        cont = FakeContainer(kwargs["name"])
        self.by_name[cont.name] = cont
        return cont


class FakeClient:
    def __init__(self):
        self.containers = FakeContainers()
        self.networks = SimpleNamespace(get=lambda name: name, create=lambda name, driver: name)

    def ping(self):
        return True


@pytest.fixture
def client(monkeypatch):
    c = FakeClient()
    monkeypatch.setattr(docker_ops, "_client", lambda: c)
    return c


def _spec(tmp_path, **svc):
    svc.setdefault("image", "postgres:16")
    return stack_from_mapping({"project": "docvault", "services": {"postgres": svc}}, base_dir=str(tmp_path)).get(
        "postgres"
    )


def test_start_passes_env_ports_volumes_and_labels(client, tmp_path):
    spec = _spec(tmp_path, ports={5432: 15432}, volumes={"postgres/init-db.sql": "/docker-entrypoint-initdb.d/init.sql"})
    backend = docker_ops.DockerBackend("docvault", base_dir=str(tmp_path), network="docvault-net")
    backend.start(spec, {"POSTGRES_PASSWORD": "x"})

    kw = client.containers.run_kwargs
    assert kw["image"] == "postgres:16"
    assert kw["name"] == "docvault-postgres"
    assert kw["environment"] == {"POSTGRES_PASSWORD": "x"}
    assert kw["network"] == "docvault-net"
    assert kw["ports"] == {"5432/tcp": 15432}
    assert kw["labels"] == {"stackctl.project": "docvault", "stackctl.service": "postgres"}
    assert kw["restart_policy"] == {"Name": "no"}
    host = str((tmp_path / "postgres" / "init-db.sql").resolve())
    assert kw["volumes"] == {host: {"bind": "/docker-entrypoint-initdb.d/init.sql", "mode": "rw"}}
    assert backend.is_running(spec)


def test_missing_image_is_a_backend_error(client, tmp_path):
    client.containers.missing_images.add("postgres:16")
    with pytest.raises(BackendError) as exc:
        docker_ops.DockerBackend("docvault").start(_spec(tmp_path), {})
    assert exc.value.service == "postgres"


def test_stop_and_remove(client, tmp_path):
    spec = _spec(tmp_path)
    backend = docker_ops.DockerBackend("docvault")
    backend.start(spec, {})
    cont = client.containers.by_name["docvault-postgres"]
    backend.stop(spec)
    assert cont.stopped and cont.removed
    # stopping something that is already gone is fine
    del client.containers.by_name["docvault-postgres"]
    backend.stop(spec)
    assert not backend.is_running(spec)


def test_exec_exit_codes(client, tmp_path):
    spec = _spec(tmp_path)
    backend = docker_ops.DockerBackend("docvault")
    client.containers.by_name["docvault-postgres"] = FakeContainer("docvault-postgres", exec_result=(1, b"no response"))
    assert backend.exec(spec, ["pg_isready"]) == (1, "no response")


@pytest.mark.parametrize("code", [126, 127])
def test_exec_that_cannot_run_is_a_probe_error(client, tmp_path, code):
    spec = _spec(tmp_path)
    client.containers.by_name["docvault-postgres"] = FakeContainer(
        "docvault-postgres", exec_result=(code, b"pg_isready: not found")
    )
    with pytest.raises(ProbeExecutionError) as exc:
        docker_ops.DockerBackend("docvault").exec(spec, ["pg_isready"])
    assert exc.value.service == "postgres"


def test_exec_in_missing_container(client, tmp_path):
    with pytest.raises(ProbeExecutionError):
        docker_ops.DockerBackend("docvault").exec(_spec(tmp_path), ["true"])


def test_missing_build_context(client, tmp_path):
    spec = _spec(tmp_path, image=None, build="services/backend")
    with pytest.raises(BackendError) as exc:
        docker_ops.build_image(spec, str(tmp_path))
    assert "build context not found" in str(exc.value)


def _network_down(name):
    raise APIError("500 Server Error: network lookup failed")


def test_network_error_is_a_backend_error(client, tmp_path):
    client.networks.get = _network_down
    with pytest.raises(BackendError) as exc:
        docker_ops.DockerBackend("docvault").start(_spec(tmp_path), {})
    assert exc.value.service == "postgres"
    assert "start failed" in str(exc.value)


def test_docker_error_during_up_fails_the_service_and_moves_on(client):
    client.networks.get = _network_down
    stack = stack_from_mapping(
        {
            "project": "docvault",
            "services": {
                "db": {"image": "postgres:16", "healthcheck": {"interval_s": 0.01, "start_timeout_s": 0.2}},
                "web": {"image": "nginx:1", "healthcheck": {"interval_s": 0.01, "start_timeout_s": 0.2}},
            },
        }
    )
    orch = Orchestrator(stack, docker_ops.DockerBackend("docvault"), environ={}, wait_step_s=0.01)
    try:
        with pytest.raises(BackendError) as exc:
            orch.up()
    finally:
        orch.shutdown()
    assert exc.value.service == "db"
    assert [e.service for e in orch.errors] == ["db", "web"]
    assert {n: s.state for n, s in orch.snapshot().items()} == {"db": ServiceState.FAILED, "web": ServiceState.FAILED}
