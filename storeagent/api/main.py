"""
HTTP facade for the command orchestration core.

The app is thin: it parses envelopes, hands commands to the dispatcher and maps
outcomes to HTTP status codes.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .schemas import (
    ApprovalCreateRequest,
    ApprovalListResponse,
    ApprovalResponse,
    BulkScheduleRequest,
    CommandRequest,
    HealthResponse,
    LogStatsResponse,
)
from ..agents.actions import build_default_registry, bulk_schedule_posts
from ..agents.adapter import ToolCallAdapter
from ..agents.dispatcher import Command, CommandDispatcher, CommandResult, ItemStatus
from ..agents.llm import build_tool_caller
from ..core import config
from ..core.approval import ApprovalBroker
from ..core.audit_log import ANY_PARENT, AuditLogStore
from ..core.db import health_check
from ..core.store import CommerceStore
from ..core.errors import (
    ActionMismatch,
    AmbiguousInstruction,
    ApprovalAlreadyConsumed,
    ApprovalExpired,
    ApprovalNotFound,
    CommandCancelled,
    CommandError,
    HandlerExecutionError,
    LLMTimeout,
    NoActionResolved,
    NotSensitive,
    UnknownAction,
    ValidationError,
)
from ..util.logging import audit_event, logger

ERROR_STATUS_CODES = {
    UnknownAction.code: 404,
    ApprovalNotFound.code: 404,
    ValidationError.code: 422,
    NotSensitive.code: 422,
    NoActionResolved.code: 422,
    AmbiguousInstruction.code: 422,
    ApprovalAlreadyConsumed.code: 409,
    ActionMismatch.code: 409,
    CommandCancelled.code: 409,
    ApprovalExpired.code: 410,
    HandlerExecutionError.code: 502,
    LLMTimeout.code: 504,
}


def status_code_for(result: CommandResult) -> int:
    """HTTP status for a dispatched command."""
    if result.status == ItemStatus.SUCCESS:
        return 200
    if result.status == ItemStatus.AWAITING_APPROVAL:
        return 202
    if result.status == ItemStatus.PARTIAL:
        return 207
    return ERROR_STATUS_CODES.get((result.error or {}).get("code"), 500)


@dataclass
class Services:
    store: CommerceStore
    audit_log: AuditLogStore
    registry: Any
    broker: ApprovalBroker
    dispatcher: CommandDispatcher

    @classmethod
    def build(cls, db_path: Optional[str] = None, caller=None) -> 'Services':
        """Wire the store, audit log, registry, broker and dispatcher."""
        db_path = db_path or config.DB_PATH
        config.ensure_db_directory(db_path)

        store = CommerceStore(db_path)
        audit_log = AuditLogStore(db_path)
        registry = build_default_registry()
        broker = ApprovalBroker(registry, db_path)
        adapter = ToolCallAdapter(registry, caller or build_tool_caller())
        dispatcher = CommandDispatcher(registry, broker, audit_log, store, adapter=adapter)
        return cls(store=store, audit_log=audit_log, registry=registry, broker=broker, dispatcher=dispatcher)


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        issues = config.validate_config()
        for issue in issues:
            logger.warning(f"Configuration issue: {issue}")
        if app.state.services is None:
            app.state.services = Services.build()
        logger.log_operation("api.startup", "success", {"actions": len(app.state.services.registry)})
        yield

    app = FastAPI(
        title="Store Agent API",
        version=config.VERSION,
        description="Command orchestration for the e-commerce admin agent",
        docs_url="/docs" if config.debug_enabled() else None,
        redoc_url="/redoc" if config.debug_enabled() else None,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.API_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CommandError)
    async def command_error_handler(request: Request, exc: CommandError):
        return JSONResponse(
            status_code=ERROR_STATUS_CODES.get(exc.code, 400),
            content={"success": False, "error": exc.to_dict()}
        )

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint(services: Services = Depends(get_services)):
        """Check system health."""
        db_health = health_check(services.audit_log.db_path)
        return HealthResponse(
            status="healthy" if db_health else "unhealthy",
            version=config.VERSION,
            db_health=db_health,
            actions=len(services.registry),
        )

    @app.post("/agent/command")
    async def agent_command(request: CommandRequest, services: Services = Depends(get_services)):
        envelope = request.model_dump(by_alias=True, exclude_none=True)
        command = Command.from_envelope(envelope, services.registry)
        result = await services.dispatcher.dispatch(command)
        return JSONResponse(status_code=status_code_for(result), content=jsonable_encoder(result.to_envelope()))

    @app.get("/agent/status")
    def agent_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
        return {
            "status": "online",
            "agent": services.dispatcher.agent_name,
            "version": config.VERSION,
            "llmProvider": config.get_llm_provider(),
            "actions": len(services.registry),
            "approvals": services.broker.stats(),
            "logs": services.audit_log.get_stats(),
            "store": services.store.counts(),
        }

    @app.get("/agent/actions")
    def list_actions(services: Services = Depends(get_services)) -> Dict[str, Any]:
        actions = services.registry.list_available()
        return {"actions": actions, "count": len(actions)}

    # Approvals

    @app.post("/approvals", response_model=ApprovalResponse, status_code=201)
    def create_approval(request: ApprovalCreateRequest, services: Services = Depends(get_services)):
        approval = services.broker.request_approval(
            request.action, request.params, request.reason, requester=request.requester
        )
        audit_event("approval.requested", {"approval_id": approval.id, "action": approval.action_name},
                    payload=approval.params)
        return ApprovalResponse(**approval.to_dict())

    # Define /approvals/pending BEFORE /approvals/{approval_id} to avoid path parameter conflict
    @app.get("/approvals/pending", response_model=ApprovalListResponse)
    def list_pending_approvals(services: Services = Depends(get_services)):
        pending = [ApprovalResponse(**request.to_dict()) for request in services.broker.list_pending()]
        return ApprovalListResponse(pending=pending, count=len(pending))

    @app.get("/approvals/{approval_id}", response_model=ApprovalResponse)
    def get_approval(approval_id: str, services: Services = Depends(get_services)):
        approval = services.broker.get_request(approval_id)
        if approval is None:
            raise HTTPException(status_code=404, detail="Approval request not found")
        return ApprovalResponse(**approval.to_dict())

    # Task logs

    @app.get("/logs")
    def list_logs(
        status: Optional[str] = None,
        task_id: Optional[str] = Query(None, alias="taskId"),
        parent_id: Optional[int] = Query(None, alias="parentId"),
        top_level: bool = Query(False, alias="topLevel"),
        include_children: bool = Query(False, alias="includeChildren"),
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        order: str = Query("desc", pattern="^(asc|desc)$"),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        if parent_id is not None:
            parent_filter = parent_id
        elif top_level:
            parent_filter = None
        else:
            parent_filter = ANY_PARENT

        try:
            entries = services.audit_log.get_logs(
                status=status, task_id=task_id, parent_id=parent_filter,
                include_children=include_children, limit=limit, offset=offset, order=order,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"logs": [entry.to_dict() for entry in entries], "count": len(entries)}

    @app.get("/logs/stats", response_model=LogStatsResponse)
    def log_stats(services: Services = Depends(get_services)):
        return LogStatsResponse(**services.audit_log.get_stats())

    @app.get("/logs/{log_id}")
    def get_log(log_id: int, services: Services = Depends(get_services)) -> Dict[str, Any]:
        entry = services.audit_log.get_log(log_id, include_children=True)
        if entry is None:
            raise HTTPException(status_code=404, detail="Task log not found")
        return entry.to_dict()

    # Posts

    @app.post("/posts/bulk-schedule")
    async def bulk_schedule(request: BulkScheduleRequest, services: Services = Depends(get_services)):
        invocations = bulk_schedule_posts(request.post_ids, request.start_date, request.interval)
        command = Command(actions=invocations, reason=request.reason)
        result = await services.dispatcher.dispatch(command)
        return JSONResponse(status_code=status_code_for(result), content=jsonable_encoder(result.to_envelope()))

    return app


app = create_app()
