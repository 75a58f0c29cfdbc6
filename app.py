import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import Settings
from errors import AutomationError, ConflictError
from models.email import InboundEmail
from models.execution import ExecutionStatus
from models.workflow import TriggerType, WorkflowCreate, WorkflowUpdate
from services import Services
from utils.time_utils import to_naive_utc, utcnow

settings = Settings.from_env()

# Configure logging to console, and to a file when LOG_FILE is set
_handlers = [logging.StreamHandler()]
if settings.log_file:
    _handlers.append(logging.FileHandler(settings.log_file))

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
    handlers=_handlers
)
logger = logging.getLogger("automation_service")


class RateLimitExceeded(Exception):
    def __init__(self, retry_after: int, limiter):
        self.retry_after = retry_after
        self.limit = limiter.max_requests
        self.window = limiter.window_seconds


class ExecuteRequest(BaseModel):
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: int = Field(300, ge=1, le=3600)
    wait_for_completion: bool = False


def get_services(request: Request) -> Services:
    return request.app.state.services


def owner_header(x_owner_id: str = Header(..., alias="X-Owner-Id", min_length=1)) -> str:
    return x_owner_id.strip().lower()


def rate_limit(request: Request, services: Services = Depends(get_services)) -> None:
    key = request.headers.get("x-owner-id") or (request.client.host if request.client else "anonymous")
    retry_after = services.rate_limiter.try_acquire(key)
    if retry_after:
        logger.warning(f"Rate limit exceeded for {key}; retry after {retry_after}s")
        raise RateLimitExceeded(retry_after, services.rate_limiter)


router = APIRouter(prefix="/api/v1", dependencies=[Depends(rate_limit)])


# Emails

@router.post("/emails/classify")
async def classify_email(envelope: InboundEmail, services: Services = Depends(get_services)):
    return services.pipeline.classify(envelope).model_dump(mode="json")


@router.post("/emails/ingest")
async def ingest_email(
    envelope: InboundEmail,
    x_owner_id: Optional[str] = Header(None, alias="X-Owner-Id"),
    services: Services = Depends(get_services),
):
    result = await services.pipeline.ingest(envelope, owner_id=x_owner_id)
    return {
        "email": result.email.model_dump(mode="json"),
        "created": result.created,
        "executions_triggered": result.execution_ids,
    }


# Workflows

@router.post("/workflows", status_code=201)
async def create_workflow(
    definition: WorkflowCreate,
    owner_id: str = Depends(owner_header),
    services: Services = Depends(get_services),
):
    return services.workflow_store.create(owner_id, definition).model_dump(mode="json")


@router.get("/workflows")
async def list_workflows(
    owner_id: str = Depends(owner_header),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    active: Optional[bool] = None,
    trigger_type: Optional[TriggerType] = None,
    category: Optional[str] = None,
    services: Services = Depends(get_services),
):
    items, total = services.workflow_store.list(
        owner_id, active=active, trigger_type=trigger_type, category=category, page=page, page_size=page_size
    )
    return {
        "items": [w.model_dump(mode="json") for w in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, owner_id: str = Depends(owner_header), services: Services = Depends(get_services)):
    return services.workflow_store.get(workflow_id, owner_id).model_dump(mode="json")


@router.patch("/workflows/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    changes: WorkflowUpdate,
    owner_id: str = Depends(owner_header),
    services: Services = Depends(get_services),
):
    return services.workflow_store.update(workflow_id, owner_id, changes).model_dump(mode="json")


@router.delete("/workflows/{workflow_id}", status_code=204)
async def delete_workflow(workflow_id: str, owner_id: str = Depends(owner_header), services: Services = Depends(get_services)):
    services.workflow_store.delete(workflow_id, owner_id)
    return Response(status_code=204)


@router.post("/workflows/{workflow_id}/execute", status_code=202)
async def execute_workflow(
    workflow_id: str,
    request_body: ExecuteRequest,
    owner_id: str = Depends(owner_header),
    services: Services = Depends(get_services),
):
    workflow = services.workflow_store.get(workflow_id, owner_id)
    if not workflow.active:
        raise ConflictError(f"Workflow {workflow_id} is not active")

    execution = await services.engine.trigger(
        workflow,
        trigger_data=request_body.trigger_data,
        timeout_seconds=request_body.timeout_seconds,
        trigger_type=TriggerType.MANUAL,
    )
    if request_body.wait_for_completion:
        execution = await services.engine.wait(execution.id, timeout=request_body.timeout_seconds)

    status_code = 200 if execution.is_terminal else 202
    return JSONResponse(status_code=status_code, content=_jsonable(execution.owner_view()))


@router.get("/workflows/{workflow_id}/executions")
async def list_executions(
    workflow_id: str,
    owner_id: str = Depends(owner_header),
    status: Optional[ExecutionStatus] = None,
    created_after: Optional[datetime] = None,
    created_before: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    services: Services = Depends(get_services),
):
    services.workflow_store.get(workflow_id, owner_id)
    result = services.execution_store.list(
        workflow_id=workflow_id,
        owner_id=owner_id,
        status=status,
        created_after=to_naive_utc(created_after),
        created_before=to_naive_utc(created_before),
        page=page,
        page_size=page_size,
    )
    return {
        "items": [e.owner_view() for e in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
    }


# Executions

@router.get("/executions/{execution_id}")
async def get_execution(execution_id: str, owner_id: str = Depends(owner_header), services: Services = Depends(get_services)):
    return services.execution_store.get(execution_id, owner_id).owner_view()


@router.post("/executions/{execution_id}/cancel", status_code=202)
async def cancel_execution(execution_id: str, owner_id: str = Depends(owner_header), services: Services = Depends(get_services)):
    execution = services.execution_store.request_cancel(execution_id, owner_id)
    services.engine.wake(execution_id)
    return execution.owner_view()


# Webhooks

@router.post("/webhooks/runtime")
async def runtime_webhook(request: Request, services: Services = Depends(get_services)):
    raw_body = await request.body()
    result = await services.gateway.handle_runtime(raw_body, request.headers)
    return result.model_dump(mode="json")


@router.post("/webhooks/mail")
async def mail_webhook(
    request: Request,
    x_owner_id: Optional[str] = Header(None, alias="X-Owner-Id"),
    services: Services = Depends(get_services),
):
    raw_body = await request.body()
    result = await services.gateway.handle_mail(raw_body, request.headers, owner_id=x_owner_id)
    return result.model_dump(mode="json")


def _jsonable(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in data.items()}


def create_app(services: Optional[Services] = None, start_scheduler: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = Services(settings)
        svc = app.state.services

        logger.info("=" * 80)
        logger.info("AUTOMATION SERVICE STARTING")
        logger.info("=" * 80)

        resumed = await svc.engine.recover()
        logger.info(f"Recovered {resumed} in-flight execution(s)")

        scheduler_task = asyncio.create_task(svc.scheduler.start()) if start_scheduler else None
        try:
            yield
        finally:
            svc.scheduler.stop()
            if scheduler_task is not None:
                scheduler_task.cancel()
                await asyncio.gather(scheduler_task, return_exceptions=True)
            await svc.engine.shutdown()

    app = FastAPI(title="Email Workflow Automation", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(AutomationError)
    async def automation_error_handler(request: Request, exc: AutomationError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"error": "rate_limited", "message": "Too many requests"},
            headers={
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Window": str(exc.window),
            },
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "time": utcnow().isoformat()}

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8050)
