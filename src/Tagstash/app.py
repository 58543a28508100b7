"""FastAPI app entrypoint for Tagstash."""

import time
import uuid
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from Tagstash import repos
from Tagstash.config import load_settings
from Tagstash.db import session_scope
from Tagstash.error_classifier import repair_suggestions, schema_error_entry
from Tagstash.exporter import build_export
from Tagstash.format_validation import SchemaValidationError, field_errors_from
from Tagstash.importer import ImportCoordinator, ImportOutcome, LimitExceededError
from Tagstash.logging import redact_settings, setup_logging
from Tagstash.metrics import get_counters
from Tagstash.schemas import ImportSessionView, RecoveryOptions, format_timestamp
from Tagstash.session_tracker import (
    SessionNotFoundError,
    SessionSnapshot,
    SessionStateError,
    summarize,
)

log = structlog.get_logger()
settings = load_settings()
setup_logging(settings)
app = FastAPI(title="Tagstash")

_coordinator: ImportCoordinator | None = None


def get_coordinator() -> ImportCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = ImportCoordinator(settings=settings)
    return _coordinator


def require_user(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="missing X-User-Id header")
    return x_user_id.strip()


@app.on_event("startup")
async def startup():
    log.info("app.startup", config=redact_settings(settings))


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Assign a request_id, bind it to structlog context, and measure duration."""
    from structlog.contextvars import bind_contextvars, clear_contextvars

    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    start = time.perf_counter()
    bind_contextvars(request_id=request_id)
    status_code = 500
    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 200)
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        log.info(
            "http.request.completed",
            http_path=str(request.url.path),
            http_method=request.method,
            http_status_code=status_code,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        clear_contextvars()


# -----------------------------
# Error mapping
# -----------------------------


def _rejection(code: str, message: str, entries: list, *, extra: dict[str, Any] | None = None):
    body: dict[str, Any] = {
        "success": False,
        "errorCode": code,
        "message": message,
        "errors": [e.to_wire() for e in entries],
        "repairSuggestions": [s.to_wire() for s in repair_suggestions(entries)],
    }
    if extra:
        body.update(extra)
    return body


@app.exception_handler(SchemaValidationError)
async def schema_error_handler(request: Request, exc: SchemaValidationError):
    entries = [schema_error_entry(e.path, e.message) for e in exc.field_errors]
    return JSONResponse(
        status_code=400,
        content=_rejection(
            exc.code,
            "Import payload failed validation",
            entries,
            extra={"fieldErrors": [e.to_wire() for e in exc.field_errors]},
        ),
    )


@app.exception_handler(LimitExceededError)
async def limit_error_handler(request: Request, exc: LimitExceededError):
    return JSONResponse(status_code=400, content=_rejection(exc.code, exc.message, [exc.entry]))


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
    return JSONResponse(
        status_code=404, content={"success": False, "errorCode": exc.code, "message": exc.message}
    )


@app.exception_handler(SessionStateError)
async def session_state_handler(request: Request, exc: SessionStateError):
    return JSONResponse(
        status_code=409, content={"success": False, "errorCode": exc.code, "message": exc.message}
    )


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as err:
        log.info("http.request.malformed_json", error=str(err))
        raise HTTPException(status_code=400, detail=f"malformed JSON body: {err}") from err


def _outcome_response(outcome: ImportOutcome) -> JSONResponse:
    return JSONResponse(status_code=200 if outcome.success else 422, content=outcome.to_wire())


def _session_view(snap: SessionSnapshot, coordinator: ImportCoordinator, entries) -> dict:
    tracker = coordinator.tracker
    view = ImportSessionView(
        session_id=snap.session_id,
        status=snap.status.value,
        total_records=snap.total_records,
        processed_records=snap.processed_records,
        imported_records=snap.imported_records,
        skipped_records=snap.skipped_records,
        failed_records=snap.failed_records,
        last_processed_index=snap.last_processed_index,
        created_at=format_timestamp(snap.created_at),
        updated_at=format_timestamp(snap.updated_at),
        error_summary=summarize(snap, entries),
        resume_info=tracker.resume_info(snap) if tracker.can_resume(snap) else None,
    )
    return view.to_wire()


# -----------------------------
# Routes
# -----------------------------


@app.post("/api/import")
async def import_records(
    request: Request,
    user_id: str = Depends(require_user),
    coordinator: ImportCoordinator = Depends(get_coordinator),
):
    payload = await _json_body(request)
    outcome = await coordinator.run_import(user_id, payload)
    return _outcome_response(outcome)


@app.post("/api/import/recover")
async def recover_import(
    request: Request,
    user_id: str = Depends(require_user),
    coordinator: ImportCoordinator = Depends(get_coordinator),
):
    body = await _json_body(request)
    try:
        options = RecoveryOptions.model_validate(body)
    except ValidationError as exc:
        raise SchemaValidationError(field_errors_from(exc)) from exc
    if options.action == "cancel":
        snap = await coordinator.cancel_import(user_id, options.session_id)
        entries = await coordinator.tracker.error_log(snap.session_id)
        return _session_view(snap, coordinator, entries)
    outcome = await coordinator.resume_import(user_id, options)
    return _outcome_response(outcome)


@app.get("/api/import/sessions")
async def list_sessions(
    user_id: str = Depends(require_user),
    coordinator: ImportCoordinator = Depends(get_coordinator),
):
    infos = await coordinator.tracker.list_resumable(
        user_id, limit=settings.import_resumable_list_limit
    )
    return {"sessions": [i.to_wire() for i in infos]}


@app.get("/api/import/sessions/{session_id}")
async def get_session(
    session_id: str,
    user_id: str = Depends(require_user),
    coordinator: ImportCoordinator = Depends(get_coordinator),
):
    snap = await coordinator.tracker.get(session_id, user_id=user_id)
    entries = await coordinator.tracker.error_log(session_id)
    return _session_view(snap, coordinator, entries)


@app.get("/api/export")
async def export_records(version: str = "2.0", user_id: str = Depends(require_user)):
    try:
        async with session_scope() as s:
            return await build_export(s, user_id, version=version)
    except ValueError as err:
        raise HTTPException(status_code=400, detail=str(err)) from err


@app.get("/healthz")
async def healthz():
    try:
        async with session_scope() as s:
            await repos.healthcheck(s)
    except Exception as err:
        raise HTTPException(status_code=500, detail=f"unhealthy: {err}") from err
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not getattr(settings, "metrics_endpoint_enabled", False):
        raise HTTPException(status_code=404, detail="metrics disabled")
    return get_counters()
