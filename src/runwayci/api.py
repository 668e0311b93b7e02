"""HTTP trigger + audit surface for one pipeline definition."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import BackgroundTasks, Body, FastAPI, HTTPException, Query

from .engine import PipelineEngine
from .errors import ConfigError
from .model import PipelineDefinition
from .schemas import CancelResponse, JobView, RunDetail, RunSummary, TriggerResponse, parse_event
from .store import RunRecord, RunStore

logger = logging.getLogger(__name__)


def _summary(record: RunRecord) -> RunSummary:
    return RunSummary(
        id=record.id,
        pipeline=record.pipeline,
        status=record.status,
        reason=record.reason,
        event=record.event,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _detail(record: RunRecord) -> RunDetail:
    return RunDetail(
        **_summary(record).model_dump(),
        jobs=[JobView(name=j.name, status=j.status, reason=j.reason, steps=j.steps) for j in record.jobs.values()],
        cleanup=record.cleanup,
    )


def create_app(engine: PipelineEngine, definition: PipelineDefinition, store: RunStore) -> FastAPI:
    app = FastAPI(title=f"runwayci: {definition.name}")

    @app.post("/events", response_model=TriggerResponse, status_code=202)
    def receive_event(background: BackgroundTasks, payload: dict[str, Any] = Body(...)):
        try:
            event = parse_event(payload)
        except ConfigError as e:
            raise HTTPException(status_code=422, detail=str(e))

        run = engine.create_run(definition, event)
        if run is None:
            return TriggerResponse(triggered=False, message=f"trigger did not match {event.event_type} on {event.ref}")

        logger.info("run %s triggered by %s on %s", run.id, event.event_type, event.ref)
        background.add_task(engine.execute, run)
        return TriggerResponse(triggered=True, run_id=run.id, status=run.status.value)

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs(limit: int = Query(50, ge=1, le=500)):
        return [_summary(r) for r in store.list_runs(limit=limit)]

    @app.get("/runs/{run_id}", response_model=RunDetail)
    def get_run(run_id: str):
        record = store.load(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _detail(record)

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        if engine.cancel(run_id):
            return CancelResponse(run_id=run_id, cancelled=True)
        if store.load(run_id) is None:
            raise HTTPException(status_code=404, detail="Run not found")
        # already finished
        return CancelResponse(run_id=run_id, cancelled=False)

    return app
