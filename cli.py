from __future__ import annotations

import argparse
import json
import sys

import requests

from stackctl import db, preflight
from stackctl.docker_ops import DockerBackend
from stackctl.driver import Orchestrator
from stackctl.errors import ConfigurationError, StackError
from stackctl.registry import Stack, load_descriptor
from stackctl.resolver import resolve_order
from stackctl.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _fail(msg: str) -> int:
    print(f"error: {msg}", file=sys.stderr)
    return 1


def _open(path: str) -> Stack:
    stack = load_descriptor(path)
    preflight.load_env(stack)
    db.init_db()
    return stack


def _orchestrator(stack: Stack) -> Orchestrator:
    orch = Orchestrator(stack, DockerBackend(stack.project, base_dir=stack.base_dir))
    orch.load_last_known()
    return orch


def _status_rows(orch: Orchestrator) -> list[dict]:
    snap = orch.snapshot()
    try:
        order = resolve_order(orch.stack.graph())
    except StackError:
        order = orch.stack.names
    return [snap[n].as_dict() for n in order]


def _cmd_init(stack: Stack) -> int:
    created, existing = preflight.ensure_storage(stack)
    for d in created:
        print(f"created directory: {d}")
    for d in existing:
        print(f"directory already exists: {d}")
    if preflight.ensure_env_file(stack):
        print(f"created {stack.env_file} from {stack.env_example}; edit the secrets before `up`:")
        for service, names in stack.missing_secrets().items():
            print(f"  {service}: {', '.join(names)}")
    else:
        print(f"{stack.env_file} already exists - skipping")
    for rel in preflight.missing_files(stack):
        print(f"warning: missing {rel}")
    try:
        print(f"docker {preflight.check_docker()}")
    except StackError as e:
        print(f"warning: {e}")
    return 0


def _cmd_check(stack: Stack) -> int:
    checks = preflight.run_checks(stack)
    for c in checks:
        print(f"{'ok  ' if c.ok else 'FAIL'} {c.message}")
    return 0 if all(c.ok for c in checks) else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Dependency-aware stack orchestrator")
    p.add_argument("-f", "--file", default=settings.stack_file, help="Stack descriptor (YAML)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init", help="Create storage directories and the .env file")
    sub.add_parser("check", help="Check docker, files and required secrets")

    s_up = sub.add_parser("up", help="Start all services in dependency order")
    s_up.add_argument("--supervise", action="store_true", help="Keep polling and applying restart policies until Ctrl-C")

    sub.add_parser("down", help="Stop all services in reverse start order")

    s_st = sub.add_parser("status", help="Print per-service state")
    s_st.add_argument("--probe", action="store_true", help="Probe active services instead of printing last known state")
    s_st.add_argument("--api", help="Ask a running `serve` instance (base URL)")

    s_rs = sub.add_parser("restart", help="Restart one service (dependents are not restarted)")
    s_rs.add_argument("name")
    s_rs.add_argument("--api", help="Ask a running `serve` instance (base URL)")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service")

    s_srv = sub.add_parser("serve", help="Bring the stack up, supervise it and serve the status API")
    s_srv.add_argument("--host", default=settings.api_host)
    s_srv.add_argument("--port", type=int, default=settings.api_port)

    args = p.parse_args(argv)

    if args.cmd in {"status", "restart"} and args.api:
        base = args.api.rstrip("/")
        try:
            if args.cmd == "status":
                r = requests.get(f"{base}/status", timeout=10)
            else:
                r = requests.post(f"{base}/services/{args.name}/restart", timeout=600)
        except requests.RequestException as e:
            return _fail(f"cannot reach {base}: {e}")
        try:
            body = r.json()
        except ValueError:
            return _fail(f"{base}: HTTP {r.status_code}, response is not JSON")
        _print(body)
        return 0 if r.ok else 1

    try:
        stack = _open(args.file)

        if args.cmd == "init":
            return _cmd_init(stack)

        if args.cmd == "check":
            return _cmd_check(stack)

        if args.cmd == "events":
            _print(db.latest_events(limit=args.limit, service_name=args.service))
            return 0

        orch = _orchestrator(stack)
        try:
            return _run(args, stack, orch)
        finally:
            # polling stops with the process; containers stay up
            orch.shutdown()
    except StackError as e:
        return _fail(str(e))


def _run(args: argparse.Namespace, stack: Stack, orch: Orchestrator) -> int:
    if args.cmd == "up":
        orch.refresh()
        err: StackError | None = None
        try:
            orch.up()
        except ConfigurationError:
            raise
        except StackError as e:
            err = e
        _print(_status_rows(orch))
        if err is not None:
            print(f"error: {err}", file=sys.stderr)
        if args.supervise:
            try:
                orch.supervise()
            except KeyboardInterrupt:
                pass
        return 0 if err is None else 1

    if args.cmd == "down":
        _print({"stopped": orch.down()})
        return 0

    if args.cmd == "status":
        if args.probe:
            orch.refresh()
        _print(_status_rows(orch))
        return 0

    if args.cmd == "restart":
        spec = stack.get(args.name)
        orch.refresh([*spec.depends_on, spec.name])
        _print(orch.restart(args.name).as_dict())
        return 0

    if args.cmd == "serve":
        import uvicorn

        from stackctl.api import create_app

        orch.refresh()
        uvicorn.run(create_app(orch, autostart=True), host=args.host, port=args.port)
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
