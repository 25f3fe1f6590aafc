from __future__ import annotations

import time
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from msgguard.core.classification.models import Participant
from msgguard.core.errors import PipelineError, Severity
from msgguard.core.moderation.models import ModerationStatus, Priority
from msgguard.web.middleware import RequestGuardMiddleware
from msgguard.web.models import (
    AuditTrailResponse,
    ChangesResponse,
    ModerateRequest,
    QueueEntryResponse,
    QueueListResponse,
    ReportRequest,
    RetentionPeriodRequest,
    SubmitMessageRequest,
    SubmitMessageResponse,
)

_NOT_FOUND = {"moderation_not_found", "message_not_found", "retention_not_found"}
_BAD_REQUEST = {"validation_error", "resolution_note_required", "duplicate_report"}


def status_for(code: str) -> int:
    if code == "moderation_conflict":
        return 409
    if code in _NOT_FOUND:
        return 404
    if code in _BAD_REQUEST:
        return 400
    if code == "store_unavailable":
        return 503
    return 500


def _trace_id(request: Request) -> str:
    return getattr(getattr(request, "state", None), "trace_id", "web")


def create_app(
    pipeline,
    *,
    logger=None,
    allowed_origins: Optional[List[str]] = None,
    max_request_bytes: int = 65536,
) -> FastAPI:
    from msgguard import __version__

    app = FastAPI(title="msgguard", version=__version__)

    if allowed_origins:
        if any(o == "*" for o in allowed_origins):
            raise ValueError("Wildcard CORS origins are not allowed.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )
    app.middleware("http")(RequestGuardMiddleware(max_request_bytes=max_request_bytes, logger=logger))

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        code = status_for(exc.code)
        if logger is not None:
            msg = f"[{_trace_id(request)}] {request.method} {request.url.path}: {exc.code}"
            if code >= 500 or exc.severity in (Severity.ERROR, Severity.CRITICAL):
                logger.error(msg)
            else:
                logger.info(msg)
        return JSONResponse(status_code=code, content={"detail": exc.user_message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "Invalid request.", "code": "validation_error"})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # ---- send path ----
    @app.post("/v1/messages", response_model=SubmitMessageResponse)
    def submit_message(req: SubmitMessageRequest, request: Request):
        trace_id = _trace_id(request)
        res = pipeline.submit_message(
            req.content,
            Participant(user_id=req.sender.user_id, role=req.sender.role),
            [Participant(user_id=r.user_id, role=r.role) for r in req.recipients],
            trace_id=trace_id,
        )
        out = res.to_dict()
        return SubmitMessageResponse(trace_id=trace_id, **out)

    @app.post("/v1/messages/{message_id}/report", response_model=QueueEntryResponse)
    def report_message(message_id: str, req: ReportRequest):
        entry = pipeline.report_message(
            message_id,
            reporter_id=req.reporter_id,
            reason=req.reason,
            description=req.description,
            priority=req.priority,
        )
        return QueueEntryResponse(entry=entry.to_dict())

    @app.get("/v1/messages/{message_id}/audit", response_model=AuditTrailResponse)
    def audit_trail(message_id: str):
        return AuditTrailResponse(message_id=message_id, entries=[e.to_record() for e in pipeline.audit_trail(message_id)])

    # ---- moderation ----
    @app.get("/v1/moderation/queue", response_model=QueueListResponse)
    def list_queue(
        priority: Optional[Priority] = None,
        status: Optional[ModerationStatus] = None,
        limit: int = Query(default=100, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ):
        # one extra row decides has_more; stay under the queue cap
        limit = max(1, min(limit, int(pipeline.cfg.moderation.max_list_limit) - 1))
        rows = pipeline.list_queue(priority=priority, status=status, limit=limit + 1, offset=offset)
        return QueueListResponse(entries=[e.to_dict() for e in rows[:limit]], has_more=len(rows) > limit)

    @app.post("/v1/moderation/{message_id}", response_model=QueueEntryResponse)
    def moderate(message_id: str, req: ModerateRequest):
        entry = pipeline.moderate(
            message_id,
            req.action,
            req.moderator_id,
            notes=req.notes,
            expected_version=req.expected_version,
            reassign_to=req.reassign_to,
        )
        return QueueEntryResponse(entry=entry.to_dict())

    @app.get("/v1/moderation/stats")
    def moderation_stats():
        return pipeline.moderation_stats()

    @app.get("/v1/moderation/changes", response_model=ChangesResponse)
    def moderation_changes(since: float = Query(default=0.0, ge=0.0), limit: int = Query(default=100, ge=1, le=500)):
        as_of = time.time()
        if not pipeline.has_new_data_since(since):
            return ChangesResponse(as_of=as_of, changed=False, entries=[])
        rows = pipeline.moderation_changes(since, limit=limit)
        return ChangesResponse(as_of=as_of, changed=True, entries=[e.to_dict() for e in rows])

    # ---- compliance / retention ----
    @app.get("/v1/compliance/stats")
    def compliance_stats():
        return pipeline.compliance_stats()

    @app.get("/v1/compliance/disclosures")
    def disclosures(
        subject_id: Optional[str] = Query(default=None, max_length=64),
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = Query(default=20, ge=1, le=100),
    ):
        rows = pipeline.disclosures(subject_id=subject_id, since=since, until=until, limit=limit)
        return {"disclosures": [e.to_record() for e in rows]}

    @app.get("/v1/retention/stats")
    def retention_stats():
        return pipeline.retention_stats()

    @app.post("/v1/retention/{message_id}/period")
    def update_retention_period(message_id: str, req: RetentionPeriodRequest):
        entry = pipeline.update_retention_period(message_id, days=req.days, reason=req.reason, actor_id=req.actor_id)
        return {"entry": entry.to_dict()}

    return app
