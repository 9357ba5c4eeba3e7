"""Deposit service process: background pipeline plus a small ops HTTP surface."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from cardfund.common.config import settings
from cardfund.common.db import SessionLocal
from cardfund.common.logging import configure_logging
from cardfund.common.metrics import metrics_response
from cardfund.common.startup import log_startup_config
from cardfund.common.tracing import instrument_app, setup_tracing
from cardfund.services.deposits.schemas import FailedJobResponse, MaintenanceRequest
from cardfund.services.deposits.service import DepositService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "REDIS_URL",
        "INDEXER_BASE_URL",
        "INDEXER_API_KEY",
        "ISSUER_BASE_URL",
        "ISSUER_SECRET_KEY",
        "MONITOR_BATCH_SIZE",
        "MONITOR_LANES",
        "PENDING_MAX_AGE_HOURS",
        "DEPOSIT_FEE_TYPE",
        "DEPOSIT_FEE_RATE",
    ],
)
service = DepositService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run scheduler, worker pools and outbox publisher with app lifecycle."""

    service.start_scheduler()
    workers_task = asyncio.create_task(service.start_workers())
    publisher_task = asyncio.create_task(service.outbox_publisher())
    yield
    workers_task.cancel()
    publisher_task.cancel()
    await service.close()


app = FastAPI(title="Card Funding Deposit Service", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def maintenance_middleware(request: Request, call_next):
    """Answer 503 while maintenance is on, except for health and admin routes."""

    path = request.url.path
    if service.maintenance.is_enabled() and not (path.startswith("/health") or path.startswith("/admin")):
        return JSONResponse(
            status_code=503,
            content={"detail": "Service is under maintenance. Please try again later.", "maintenance": True},
        )
    return await call_next(request)


def enforce_api_key(x_api_key: str | None) -> None:
    """Simple API-key gate for ops endpoints."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@app.get("/admin/jobs/failed", response_model=list[FailedJobResponse])
def failed_jobs(limit: int = 50, job_type: str | None = None, x_api_key: str | None = Header(default=None)):
    """Failed jobs awaiting manual reconciliation, newest first."""

    enforce_api_key(x_api_key)
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")
    return [
        FailedJobResponse(
            job_id=row.id,
            job_type=row.job_type,
            job_key=row.job_key,
            attempts_made=row.attempts_made,
            max_attempts=row.max_attempts,
            last_error=row.last_error,
            payload=row.payload,
            updated_at=row.updated_at,
        )
        for row in service.queue.list_failed(limit=limit, job_type=job_type)
    ]


@app.post("/admin/jobs/{job_id}/retry")
def retry_job(job_id: str, x_api_key: str | None = Header(default=None)):
    """Give one failed job a fresh attempt budget."""

    enforce_api_key(x_api_key)
    if not service.queue.retry_failed(job_id):
        raise HTTPException(status_code=409, detail="job not found or not in FAILED state")
    return {"job_id": job_id, "status": "PENDING"}


@app.get("/admin/maintenance")
def get_maintenance(x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return {"enabled": service.maintenance.is_enabled()}


@app.post("/admin/maintenance")
def set_maintenance(req: MaintenanceRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    previous = service.maintenance.set_enabled(req.enabled)
    return {"enabled": req.enabled, "previous": previous}


@app.post("/webhooks/issuer")
async def issuer_webhook(request: Request):
    """Accept one issuer webhook and forward it to `issuer.events`."""

    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="body must be JSON") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="body must be a JSON object")
    try:
        event = service.handle_issuer_webhook(body)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"ok": True, "kind": event.kind}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
