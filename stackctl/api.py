from __future__ import annotations

import threading

from fastapi import FastAPI, HTTPException, Query

from . import db
from .driver import Orchestrator
from .errors import ConfigurationError, DependencyNotHealthyError, StackError
from .models import ServiceStatusOut, StackStatusOut
from .resolver import resolve_order


def create_app(orch: Orchestrator, autostart: bool = False) -> FastAPI:
    """Status API for a running supervisor. Reads never block on probes.

    With autostart the stack is brought up in the background when the app
    starts; polling stops (containers stay up) when it shuts down.
    """
    app = FastAPI(title=f"stackctl: {orch.project}")

    def _bring_up() -> None:
        try:
            orch.up()
        except StackError as e:
            db.log_event("ERROR", f"up failed: {e}", service_name=e.service)

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        if autostart:
            threading.Thread(target=_bring_up, name="stackctl-up", daemon=True).start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        orch.shutdown()

    def _order() -> list[str]:
        try:
            return resolve_order(orch.stack.graph())
        except ConfigurationError:
            return orch.stack.names

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/status", response_model=StackStatusOut)
    def status() -> StackStatusOut:
        snap = orch.snapshot()
        return StackStatusOut(
            project=orch.project,
            services=[ServiceStatusOut(**snap[n].as_dict()) for n in _order()],
        )

    @app.get("/status/{name}", response_model=ServiceStatusOut)
    def service_status(name: str) -> ServiceStatusOut:
        snap = orch.snapshot()
        if name not in snap:
            raise HTTPException(status_code=404, detail=f"unknown service '{name}'")
        return ServiceStatusOut(**snap[name].as_dict())

    @app.get("/events")
    def events(limit: int = Query(50, ge=1, le=1000), service: str | None = None) -> list[dict]:
        return db.latest_events(limit=limit, service_name=service)

    @app.post("/services/{name}/restart", response_model=ServiceStatusOut)
    def restart(name: str) -> ServiceStatusOut:
        if name not in orch.stack.names:
            raise HTTPException(status_code=404, detail=f"unknown service '{name}'")
        try:
            st = orch.restart(name)
        except DependencyNotHealthyError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        except StackError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return ServiceStatusOut(**st.as_dict())

    return app
