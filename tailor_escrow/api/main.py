import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from tailor_escrow.api.background import run_periodic_sweeps
from tailor_escrow.api.observability import setup_observability
from tailor_escrow.api.persistence_profile import validate_persistence_profile_guardrails
from tailor_escrow.api.routers.disputes import router as dispute_router
from tailor_escrow.api.routers.escrow import router as escrow_router
from tailor_escrow.api.routers.escrow_config import (
    auto_approval_sweep_enabled,
    auto_approval_sweep_interval_seconds,
)
from tailor_escrow.api.routers.escrow_runtime import get_escrow_services
from tailor_escrow.api.routers.milestones import router as milestone_router
from tailor_escrow.api.routers.operations import router as operations_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    stop_event = asyncio.Event()
    sweep_task = None
    if auto_approval_sweep_enabled():
        sweep_task = asyncio.create_task(
            run_periodic_sweeps(
                services_provider=get_escrow_services,
                interval_seconds=auto_approval_sweep_interval_seconds(),
                stop_event=stop_event,
            )
        )
    try:
        yield
    finally:
        stop_event.set()
        if sweep_task is not None:
            await sweep_task


app = FastAPI(
    title="Tailor Escrow API",
    version="0.1.0",
    description=(
        "Staged escrow release for custom tailoring orders.\n\n"
        "Customer payments are held as deposit, fitting and final shares and released to "
        "the tailor as production milestones are approved. Rejections open disputes whose "
        "resolution is the only path that refunds escrowed funds."
    ),
    openapi_tags=[
        {"name": "Escrow Ledger", "description": "Escrow initialization, capture and state."},
        {"name": "Milestones", "description": "Evidence submission and customer decisions."},
        {"name": "Disputes", "description": "Dispute lifecycle, SLA and resolution."},
        {"name": "Operations", "description": "Scheduled sweeps and health."},
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)

app.include_router(escrow_router)
app.include_router(milestone_router)
app.include_router(dispute_router)
app.include_router(operations_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )
