from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from nav_actions.core.audit import AuditQuery, AuditStatus
from nav_actions.core.domain import ActionSource, ActionType, EntityType
from nav_actions.core.errors import CoreError, ErrorCode
from nav_actions.session import ActionSession
from nav_actions.settings import NavActionsSettings, configure_logging

logger = logging.getLogger(__name__)

STATUS_BY_ERROR_CODE: Dict[ErrorCode, int] = {
    ErrorCode.INVALID_INPUT_DATA: 400,
    ErrorCode.INVALID_FIELD_VALUE: 400,
    ErrorCode.VALIDATION_BLOCKED: 422,
    ErrorCode.QUEUE_STATE: 409,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.IRREVERSIBLE_ACTION: 409,
    ErrorCode.EXECUTION_FAILURE: 502,
    ErrorCode.UNKNOWN_ERROR: 500,
}


class ActionRequest(BaseModel):
    action: Dict[str, Any]


class BulkRequest(BaseModel):
    actions: List[Dict[str, Any]] = Field(..., min_length=1)


class ExecuteRequest(BaseModel):
    entry_ids: Optional[List[str]] = None


def create_app(session: Optional[ActionSession] = None, settings: Optional[NavActionsSettings] = None) -> FastAPI:
    """Build the HTTP app around one session.

    Without a session one is built from settings (HTTP mutation service,
    audit DB from NA_AUDIT_DB_URL). Use ``uvicorn --factory
    nav_actions.service:create_app`` to serve it.
    """
    settings = settings or NavActionsSettings()
    configure_logging(settings.log_level)
    if session is None:
        session = ActionSession.from_settings(settings)

    app = FastAPI(title="nav_actions", version="0.1.0")
    app.state.session = session

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
        max_age=600,
    )

    @app.middleware("http")
    async def limit_upload_size(request: Request, call_next):
        cl = request.headers.get("content-length")
        if cl:
            try:
                too_large = int(cl) > settings.max_request_bytes
            except ValueError:
                too_large = False
            if too_large:
                return JSONResponse(status_code=413, content={"detail": "Request too large"})
        return await call_next(request)

    @app.exception_handler(CoreError)
    async def core_error_handler(request: Request, exc: CoreError):
        status = STATUS_BY_ERROR_CODE.get(exc.error_code, 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(PydanticValidationError)
    async def invalid_action_handler(request: Request, exc: PydanticValidationError):
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        return JSONResponse(
            status_code=400,
            content={"error_code": ErrorCode.INVALID_INPUT_DATA.name, "message": "Invalid action", "context": {"errors": errors}},
        )

    # ---------- Actions ----------
    @app.post("/v1/actions:propose")
    def actions_propose(req: ActionRequest):
        return session.propose_action(req.action).model_dump(mode="json")

    @app.post("/v1/actions:proposeBulk")
    def actions_propose_bulk(req: BulkRequest):
        return session.propose_bulk(req.actions).model_dump(mode="json")

    @app.post("/v1/actions:queue", status_code=201)
    def actions_queue(req: ActionRequest):
        return session.confirm_and_queue(req.action).model_dump(mode="json")

    @app.post("/v1/actions:queueBulk", status_code=201)
    def actions_queue_bulk(req: BulkRequest):
        return session.confirm_and_queue_bulk(req.actions).model_dump(mode="json")

    # ---------- Queue ----------
    @app.get("/v1/queue")
    def queue_list():
        entries = session.queue_snapshot()
        counts = session.queue.size_by_status()
        return {
            "entries": [e.model_dump(mode="json") for e in entries],
            "counts": {status.value: n for status, n in counts.items()},
        }

    @app.post("/v1/queue/{entry_id}:confirm")
    def queue_confirm(entry_id: str):
        return session.confirm(entry_id).model_dump(mode="json")

    @app.post("/v1/queue/{entry_id}:cancel")
    def queue_cancel(entry_id: str):
        return session.cancel(entry_id).model_dump(mode="json")

    @app.post("/v1/queue/{entry_id}:execute")
    async def queue_execute(entry_id: str):
        audit = await session.execute(entry_id)
        return audit.model_dump(mode="json")

    @app.post("/v1/queue:confirmAll")
    def queue_confirm_all():
        return {"confirmed": session.confirm_all()}

    @app.post("/v1/queue:cancelAll")
    def queue_cancel_all():
        return {"cancelled": session.cancel_all()}

    @app.post("/v1/queue:clearFinished")
    def queue_clear_finished():
        return {"removed": session.clear_finished()}

    @app.post("/v1/queue:execute")
    async def queue_execute_many(req: Optional[ExecuteRequest] = None):
        if req is not None and req.entry_ids:
            results = await session.pipeline.execute_many(req.entry_ids)
        else:
            results = await session.execute_confirmed()
        return [a.model_dump(mode="json") for a in results]

    # ---------- Audit ----------
    @app.get("/v1/audit")
    def audit_list(
        entity_id: Optional[str] = None,
        entity_type: Optional[EntityType] = None,
        account_id: Optional[str] = None,
        status: Optional[AuditStatus] = None,
        source: Optional[ActionSource] = None,
        action_type: Optional[ActionType] = None,
        offset: int = Query(0, ge=0),
        limit: int = Query(50, ge=1, le=500),
    ):
        filters = AuditQuery(
            entity_id=entity_id,
            entity_type=entity_type,
            account_id=account_id,
            status=status,
            source=source,
            action_type=action_type,
            offset=offset,
            limit=limit,
        )
        return session.audit_query(filters).model_dump(mode="json")

    @app.get("/v1/audit/{entry_id}")
    def audit_get(entry_id: int):
        entry = session.audit_entry(entry_id)
        return {**entry.model_dump(mode="json"), "can_undo": session.history.can_undo_entry(entry)}

    # ---------- Undo / redo ----------
    @app.post("/v1/undo")
    async def undo():
        audit = await session.undo()
        return audit.model_dump(mode="json")

    @app.post("/v1/redo")
    async def redo():
        audit = await session.redo()
        return audit.model_dump(mode="json")

    @app.get("/v1/history")
    def history():
        return session.history.history()

    # ---------- Guardrail settings ----------
    @app.get("/v1/guardrails")
    def guardrails_get():
        return session.guardrail_config().model_dump(mode="json")

    @app.patch("/v1/guardrails")
    def guardrails_update(changes: Dict[str, Any]):
        if not changes:
            raise HTTPException(status_code=400, detail="No changes given")
        return session.update_guardrail_config(**changes).model_dump(mode="json")

    return app
