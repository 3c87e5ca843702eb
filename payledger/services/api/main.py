"""Ops HTTP surface for the ledger and job engine.

Reads are open to internal callers; every route that writes requires the
`X-API-Key` header. The lifespan runs the outbox publisher loop.
"""

import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select

from payledger.common.clock import SystemClock
from payledger.common.config import settings
from payledger.common.db import SessionLocal
from payledger.common.errors import LedgerCoreError
from payledger.common.logging import configure_logging, trace_id_ctx
from payledger.common.metrics import metrics_response
from payledger.common.startup import log_startup_config
from payledger.common.tracing import instrument_app, setup_tracing
from payledger.services.reconciliation.models import ReconciliationDiscrepancy
from payledger.services.registry import build_services
from payledger.services.settlement.gateway import HttpPaymentGateway

configure_logging()
setup_tracing(settings)
log_startup_config(settings)
services = build_services(SessionLocal, settings, SystemClock())
gateway = HttpPaymentGateway(settings)


def get_services():
    return services


def get_gateway():
    return gateway


def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with the app lifecycle."""

    publisher = services.outbox_publisher()
    publisher_task = asyncio.create_task(publisher.run_forever())
    yield
    publisher_task.cancel()
    await publisher.bus.close()


app = FastAPI(title="PayLedger Ops", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
    return await call_next(request)


@app.exception_handler(LedgerCoreError)
async def ledger_error_handler(_: Request, exc: LedgerCoreError):
    """Structured error summary; retryable conflicts map to 409."""

    return JSONResponse(status_code=409 if exc.retryable else 422, content=exc.to_dict())


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/businesses/{business_id}/balance")
def get_balance(business_id: str, include_pending: bool = False, svc=Depends(get_services)):
    """Cached and authoritative escrow balance for one business."""

    cached = svc.escrow.get_available_balance(business_id, use_cache=True, include_pending=include_pending)
    calculated = svc.escrow.get_available_balance(business_id, use_cache=False, include_pending=include_pending)
    return {
        "business_id": business_id,
        "cached_balance": str(cached),
        "calculated_balance": str(calculated),
        "include_pending": include_pending,
    }


@app.post("/deposits/{deposit_id}/confirm", dependencies=[Depends(enforce_api_key)])
def confirm_deposit(deposit_id: str, actor: str = "api", svc=Depends(get_services)):
    deposit = svc.escrow.confirm_deposit(deposit_id, actor=actor)
    return {"deposit_id": deposit.deposit_id, "status": deposit.status, "authorized_cents": deposit.authorized_cents}


@app.get("/ledger/verify")
def verify_ledger(limit: int | None = None, svc=Depends(get_services)):
    """Double-entry check over every ledger transaction."""

    return svc.reconciliation.verify_ledger(limit=limit)


@app.post("/reconciliation/run", dependencies=[Depends(enforce_api_key)])
def run_reconciliation(business_id: str | None = None, auto_fix: bool = False, svc=Depends(get_services)):
    if business_id:
        return svc.reconciliation.reconcile_balance(business_id, auto_fix=auto_fix).to_dict()
    return svc.reconciliation.reconcile_all(auto_fix=auto_fix).to_dict()


@app.get("/reconciliation/discrepancies")
def list_discrepancies(status: str = "open", limit: int = 100, svc=Depends(get_services)):
    with svc.session_factory() as db:
        rows = db.execute(
            select(ReconciliationDiscrepancy)
            .where(ReconciliationDiscrepancy.status == status)
            .order_by(ReconciliationDiscrepancy.detected_at)
            .limit(limit)
        ).scalars().all()
    return {
        "status": status,
        "count": len(rows),
        "discrepancies": [
            {
                "id": row.id,
                "business_id": row.business_id,
                "type": row.discrepancy_type,
                "difference_cents": row.difference_cents,
                "status": row.status,
                "detected_at": row.detected_at.isoformat() if row.detected_at else None,
            }
            for row in rows
        ],
    }


@app.post("/reconciliation/discrepancies/{discrepancy_id}/{action}", dependencies=[Depends(enforce_api_key)])
def act_on_discrepancy(discrepancy_id: str, action: str, actor: str, notes: str | None = None, svc=Depends(get_services)):
    """Approval trail: approve, compensate or resolve one discrepancy."""

    if action == "approve":
        record = svc.reconciliation.approve_discrepancy(discrepancy_id, actor, notes)
    elif action == "compensate":
        record = svc.reconciliation.compensate_discrepancy(discrepancy_id, actor)
    elif action == "resolve":
        record = svc.reconciliation.resolve_discrepancy(discrepancy_id, actor, notes)
    else:
        raise HTTPException(status_code=404, detail=f"unknown action {action}")
    return {"id": record.id, "status": record.status}


@app.post("/reconciliation/payroll", dependencies=[Depends(enforce_api_key)])
def payroll_integrity(business_id: str | None = None, fix: bool = False, svc=Depends(get_services)):
    return svc.integrity.run(business_id=business_id, fix=fix).to_dict()


@app.post("/schedules/run", dependencies=[Depends(enforce_api_key)])
def run_schedules(job_type: str | None = None, svc=Depends(get_services)):
    """Materialize jobs for every due schedule."""

    return svc.schedules.run_due_schedules(job_type).to_dict()


@app.post("/settlement/windows/{window_id}/process", dependencies=[Depends(enforce_api_key)])
def process_window(window_id: int, svc=Depends(get_services), payment_gateway=Depends(get_gateway)):
    result = svc.settlement.process_window(window_id, payment_gateway)
    if result.status == "in_progress":
        raise HTTPException(status_code=409, detail="settlement window already in progress")
    return result.to_dict()


@app.post("/settlement/windows/process-due", dependencies=[Depends(enforce_api_key)])
def process_due_windows(svc=Depends(get_services), payment_gateway=Depends(get_gateway)):
    return {"windows": [result.to_dict() for result in svc.settlement.process_due_windows(payment_gateway)]}


@app.post("/recovery/run", dependencies=[Depends(enforce_api_key)])
def run_recovery(job_type: str = "all", limit: int | None = None, svc=Depends(get_services)):
    """Stuck-job reset and failed-job retry passes."""

    return svc.recovery.run(job_type, limit).to_dict()


@app.post("/jobs/payroll/{job_id}/recalculate", dependencies=[Depends(enforce_api_key)])
def recalculate_payroll_job(job_id: str, force: bool = False, actor: str = "api", svc=Depends(get_services)):
    result = svc.recalculator.recalculate_job(job_id, force=force, actor=actor)
    if result.status == "in_progress":
        raise HTTPException(status_code=409, detail="recalculation already in progress")
    return result.to_dict()
