from __future__ import annotations

import json
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import JSONResponse, StreamingResponse

from schema_engine.config import RUN_RETENTION_DAYS, STALE_RUN_MINUTES
from schema_engine.db import get_session
from schema_engine.engine import Engine, get_engine
from schema_engine.errors import RowValidationError
from schema_engine.models import TERMINAL_RUN_STATUSES, utcnow
from schema_engine.services.csv_ingest import FORMAT_CSV, read_rows
from schema_engine.services.events import KIND_RUN
from schema_engine.services.normalize import RawRow, ValidationReport, validate_rows
from schema_engine.services.progress import estimate_remaining, format_duration, initial_estimate, summarize
from schema_engine.services.runs import (
    cleanup_old_runs,
    create_run,
    delete_run,
    get_run,
    get_run_items,
    item_to_dict,
    list_runs,
    reconcile_stale_runs,
    run_to_dict,
)

router = APIRouter()

# seconds between keep-alive comments on an idle event stream
KEEPALIVE_S = 15


class TableRow(BaseModel):
    path: str = ""
    domain: str = ""
    page_type: str = ""
    category: str = ""


class BatchInput(BaseModel):
    label: Optional[str] = None
    overwrite: Optional[bool] = None
    format: Literal["csv", "paste", "table"] = "csv"
    text: Optional[str] = None
    rows: List[TableRow] = []


def _raw_rows(payload: BatchInput) -> List[RawRow]:
    if payload.format == "table":
        return [RawRow(row_number=i, **r.model_dump()) for i, r in enumerate(payload.rows, start=1)]
    return read_rows(payload.text or "", payload.format)


async def _validate(session: AsyncSession, engine: Engine, rows: List[RawRow]) -> ValidationReport:
    snap = await engine.taxonomy.get(session)
    return validate_rows(rows, snap)


async def _report_response(session: AsyncSession, engine: Engine, rows: List[RawRow]) -> dict:
    snap = await engine.taxonomy.get(session)
    report = validate_rows(rows, snap)
    out = report.to_dict()
    for row in out["valid_rows"]:
        row["page_type_label"] = snap.page_type_label(row["page_type"])
        row["category_label"] = snap.category_label(row["category"])
    ms = initial_estimate(len(report.valid_rows))
    out["initial_estimate_ms"] = ms
    out["initial_estimate"] = format_duration(ms)
    return out


async def _start(session: AsyncSession, engine: Engine, label: Optional[str],
                 overwrite: Optional[bool], rows: List[RawRow]) -> JSONResponse:
    report = await _validate(session, engine, rows)
    if not report.ok:
        raise RowValidationError(report.errors, valid_rows=len(report.valid_rows))
    run = await create_run(session, label, report.valid_rows, overwrite=overwrite)
    engine.orchestrator.start(run.id)
    return JSONResponse({"run": run_to_dict(run), "rows": len(report.valid_rows)}, status_code=201)


@router.post("/batch/validate")
async def batch_validate(payload: BatchInput, session: AsyncSession = Depends(get_session),
                         engine: Engine = Depends(get_engine)):
    return await _report_response(session, engine, _raw_rows(payload))


@router.post("/batch/validate/upload")
async def batch_validate_upload(file: UploadFile = File(...), session: AsyncSession = Depends(get_session),
                                engine: Engine = Depends(get_engine)):
    text = (await file.read()).decode("utf-8", errors="ignore")
    return await _report_response(session, engine, read_rows(text, FORMAT_CSV))


@router.post("/batch/runs")
async def batch_create(payload: BatchInput, session: AsyncSession = Depends(get_session),
                       engine: Engine = Depends(get_engine)):
    return await _start(session, engine, payload.label, payload.overwrite, _raw_rows(payload))


@router.post("/batch/upload")
async def batch_upload(file: UploadFile = File(...), label: Optional[str] = Form(None),
                       overwrite: Optional[bool] = Form(None),
                       session: AsyncSession = Depends(get_session), engine: Engine = Depends(get_engine)):
    text = (await file.read()).decode("utf-8", errors="ignore")
    return await _start(session, engine, label or file.filename, overwrite, read_rows(text, FORMAT_CSV))


@router.get("/batch/runs")
async def batch_list(limit: int = Query(50, ge=1, le=500), status: Optional[str] = None,
                     session: AsyncSession = Depends(get_session)):
    runs = await list_runs(session, limit=limit, status=status)
    return {"runs": [run_to_dict(r) for r in runs]}


@router.get("/batch/runs/{run_id}")
async def batch_detail(run_id: int, session: AsyncSession = Depends(get_session)):
    run = await get_run(session, run_id)
    items = await get_run_items(session, run_id)
    est = estimate_remaining(run, items, run.started_at, utcnow()) if run.started_at else None
    return {
        "run": run_to_dict(run),
        "items": [item_to_dict(i) for i in items],
        "summary": summarize(items).to_dict(),
        "estimate": est.to_dict() if est else None,
    }


@router.post("/batch/runs/{run_id}/cancel")
async def batch_cancel(run_id: int, session: AsyncSession = Depends(get_session),
                       engine: Engine = Depends(get_engine)):
    run = await get_run(session, run_id)
    return {"run_id": run.id, "cancelled": engine.orchestrator.cancel(run_id)}


@router.delete("/batch/runs/{run_id}")
async def batch_delete(run_id: int, session: AsyncSession = Depends(get_session)):
    await delete_run(session, run_id)
    return {"ok": True, "deleted": run_id}


@router.post("/batch/cleanup")
async def batch_cleanup(days: int = Query(RUN_RETENTION_DAYS, ge=1),
                        session: AsyncSession = Depends(get_session)):
    removed = await cleanup_old_runs(session, days)
    return {"ok": True, "count": len(removed), "runs": removed}


@router.post("/batch/reconcile")
async def batch_reconcile(minutes: int = Query(STALE_RUN_MINUTES, ge=1),
                          session: AsyncSession = Depends(get_session), engine: Engine = Depends(get_engine)):
    failed = await reconcile_stale_runs(session, minutes, active_ids=engine.orchestrator.active_runs(),
                                        feed=engine.feed)
    return {"ok": True, "failed": failed}


def _sse(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


@router.get("/events/runs/{run_id}")
async def run_events(run_id: int, session: AsyncSession = Depends(get_session),
                     engine: Engine = Depends(get_engine)):
    # subscribe before reading the snapshot so nothing committed in between is lost
    sub = engine.feed.subscribe(run_id)
    try:
        run = await get_run(session, run_id)
        items = await get_run_items(session, run_id)
    except Exception:
        sub.close()
        raise
    snapshot = {"run": run_to_dict(run), "items": [item_to_dict(i) for i in items],
                "summary": summarize(items).to_dict()}
    already_done = run.status in TERMINAL_RUN_STATUSES

    async def event_stream():
        try:
            yield _sse("snapshot", snapshot)
            if already_done:
                yield _sse("done", {"status": snapshot["run"]["status"]})
                return
            while True:
                delta = await sub.get(timeout=KEEPALIVE_S)
                if delta is None:
                    if sub.closed:
                        return
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(delta.kind, delta.to_dict())
                if delta.kind == KIND_RUN and delta.data.get("status") in TERMINAL_RUN_STATUSES:
                    yield _sse("done", {"status": delta.data["status"]})
                    return
        finally:
            sub.close()

    return StreamingResponse(event_stream(), media_type="text/event-stream")
