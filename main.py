from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Query, Request

from cmm import db
from cmm.api_models import RetryResponse, StatusResponse, WorkerView
from cmm.manager import MembershipManager, build_manager
from cmm.settings import Settings, settings


def create_app(
    cfg: Settings = settings,
    factory: Callable[[Settings], MembershipManager] = build_manager,
) -> FastAPI:
    """Status API around one membership manager.

    The manager is built during startup, so a scope resolution failure
    aborts the server before it accepts requests.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        manager = factory(cfg)
        app.state.manager = manager
        manager.start()
        try:
            yield
        finally:
            manager.stop()

    app = FastAPI(title="Citus Membership Manager", lifespan=lifespan)

    def _manager(request: Request) -> MembershipManager:
        return request.app.state.manager

    @app.get("/health", response_model=StatusResponse)
    def health(request: Request):
        m = _manager(request)
        return StatusResponse(ready=m.ready, scope=m.scope, workers=len(m.reconciler), sweeps=m.sweeps)

    @app.get("/workers", response_model=list[WorkerView])
    def workers(request: Request):
        m = _manager(request)
        return [WorkerView.from_record(r, queued=m.executor.is_pending(r.identity)) for r in m.reconciler.records()]

    @app.get("/workers/{identity}", response_model=WorkerView)
    def worker(identity: str, request: Request):
        m = _manager(request)
        rec = m.reconciler.get(identity)
        if rec is None:
            raise HTTPException(status_code=404, detail=f"Unknown worker '{identity}'.")
        return WorkerView.from_record(rec, queued=m.executor.is_pending(identity))

    @app.post("/workers/{identity}/retry", response_model=RetryResponse)
    def retry(identity: str, request: Request):
        m = _manager(request)
        rec = m.reconciler.get(identity)
        if rec is None:
            raise HTTPException(status_code=404, detail=f"Unknown worker '{identity}'.")
        if not rec.state.pending:
            raise HTTPException(status_code=409, detail=f"Worker is {rec.state.value}; nothing to retry.")
        intent = m.retry(identity)
        if intent is None:
            raise HTTPException(status_code=409, detail="A command for this worker is already queued.")
        return RetryResponse(
            identity=intent.identity,
            operation=intent.operation.value,
            address=str(intent.address),
            version=intent.version,
        )

    @app.get("/events")
    def events(limit: int = Query(50, ge=1, le=1000), level: str | None = None):
        return db.latest_events(limit=limit, level=level)

    return app


app = create_app()
