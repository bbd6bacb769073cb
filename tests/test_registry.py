import os
from dataclasses import FrozenInstanceError

import pytest

from stackctl.errors import ConfigurationError, CycleError
from stackctl.registry import RestartPolicy, load_descriptor, stack_from_mapping


PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))


def _write(tmp_path, text):
    p = tmp_path / "stack.yml"
    p.write_text(text, encoding="utf-8")
    return p


def test_bundled_descriptor_loads():
    stack = load_descriptor(os.path.join(PROJECT_ROOT, "stack.yml"))
    assert stack.project == "docvault"
    assert stack.names[0] == "postgres"
    backend = stack.get("backend")
    assert backend.depends_on == ("postgres", "redis", "meilisearch")
    assert backend.build_context == "services/backend"
    assert "APP_SECRET" in backend.secrets
    assert stack.get("meilisearch").healthcheck.kind == "http"
    assert stack.get("postgres").healthcheck.target == ("pg_isready", "-q")
    assert stack.get("frontend").healthcheck.kind == "running"
    assert stack.get("redis").restart.mode == "always"


def test_yaml_declaration_order_is_kept(tmp_path):
    p = _write(
        tmp_path,
        """
services:
  zeta: {image: "z:1"}
  alpha: {image: "a:1"}
  mid: {image: "m:1", depends_on: [alpha]}
""",
    )
    stack = load_descriptor(p)
    assert stack.names == ["zeta", "alpha", "mid"]
    assert stack.graph() == {"zeta": (), "alpha": (), "mid": ("alpha",)}
    assert stack.base_dir == str(tmp_path.resolve())


def test_specs_are_immutable():
    stack = stack_from_mapping({"services": {"db": {"image": "postgres"}}})
    with pytest.raises(FrozenInstanceError):
        stack.get("db").image = "mysql"


def test_missing_image_and_build_names_the_service():
    with pytest.raises(ConfigurationError) as exc:
        stack_from_mapping({"services": {"api": {"depends_on": []}}})
    assert exc.value.service == "api"
    assert "image" in str(exc.value)


def test_unknown_key_is_rejected():
    with pytest.raises(ConfigurationError) as exc:
        stack_from_mapping({"services": {"api": {"image": "x", "dependson": ["db"]}}})
    assert exc.value.service == "api"


def test_empty_services_is_rejected():
    with pytest.raises(ConfigurationError):
        stack_from_mapping({"services": {}})
    with pytest.raises(ConfigurationError):
        stack_from_mapping(["not", "a", "mapping"])


def test_healthcheck_cannot_be_both_http_and_command():
    with pytest.raises(ConfigurationError) as exc:
        stack_from_mapping(
            {"services": {"api": {"image": "x", "healthcheck": {"http": "http://localhost/", "command": "true"}}}}
        )
    assert exc.value.service == "api"


def test_command_string_is_split():
    stack = stack_from_mapping(
        {"services": {"db": {"image": "postgres", "healthcheck": {"command": "pg_isready -U 'doc vault'"}}}}
    )
    assert stack.get("db").healthcheck.target == ("pg_isready", "-U", "doc vault")


def test_unknown_dependency_names_the_dependent():
    with pytest.raises(ConfigurationError) as exc:
        stack_from_mapping({"services": {"api": {"image": "x", "depends_on": ["db"]}}})
    assert exc.value.service == "api"
    assert "'db'" in str(exc.value)


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError):
        stack_from_mapping({"services": {"api": {"image": "x", "depends_on": ["api"]}}})


def test_invalid_service_name():
    with pytest.raises(ConfigurationError) as exc:
        stack_from_mapping({"services": {"Bad Name": {"image": "x"}}})
    assert exc.value.service == "Bad Name"


def test_bare_no_restart_mode(tmp_path):
    p = _write(tmp_path, "services:\n  job:\n    image: x\n    restart: {mode: no}\n")
    assert load_descriptor(p).get("job").restart.mode == "no"


def test_unparsable_yaml(tmp_path):
    p = _write(tmp_path, "services: [unclosed\n")
    with pytest.raises(ConfigurationError):
        load_descriptor(p)


def test_missing_descriptor(tmp_path):
    with pytest.raises(ConfigurationError):
        load_descriptor(tmp_path / "nope.yml")


def test_backoff_doubles_and_caps():
    policy = RestartPolicy(mode="on-failure", max_retries=5, backoff_s=1.0, backoff_max_s=5.0)
    assert [policy.backoff(k) for k in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert policy.backoff(0) == 0.0


def test_secrets_and_environment_pass_through():
    stack = stack_from_mapping(
        {
            "services": {
                "db": {"image": "postgres", "environment": ["POSTGRES_DB"], "secrets": ["POSTGRES_PASSWORD"]},
                "cache": {"image": "redis", "secrets": ["REDIS_PASSWORD"]},
            }
        }
    )
    env = {"POSTGRES_DB": "docvault", "POSTGRES_PASSWORD": "s3cret", "UNRELATED": "1"}
    assert stack.missing_secrets(env) == {"cache": ["REDIS_PASSWORD"]}
    assert stack.environment_for(stack.get("db"), env) == {"POSTGRES_DB": "docvault", "POSTGRES_PASSWORD": "s3cret"}
    # present-but-empty secrets count as missing
    assert stack.missing_secrets({"POSTGRES_PASSWORD": "", "REDIS_PASSWORD": "x"}) == {"db": ["POSTGRES_PASSWORD"]}


def test_get_unknown_service():
    stack = stack_from_mapping({"services": {"db": {"image": "postgres"}}})
    with pytest.raises(ConfigurationError) as exc:
        stack.get("web")
    assert exc.value.service == "web"
