"""DecisionOS FastAPI application."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from decisionos.api.decisions import router as decisions_router
from decisionos.api.feedback import router as feedback_router
from decisionos.api.health import router as health_router
from decisionos.config import settings
from decisionos.storage.guard import CODE_READONLY_MODE, ReadonlyModeError, TenantSafetyError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="DecisionOS - Feedback Ledger",
    description="Append-only decision feedback with undo, taste signals and tenant-safe SQL",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TenantSafetyError)
async def tenant_safety_handler(request: Request, exc: TenantSafetyError):
    # Statement never reached the database; expose only the stable code.
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": exc.code},
    )


@app.exception_handler(ReadonlyModeError)
async def readonly_mode_handler(request: Request, exc: ReadonlyModeError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": CODE_READONLY_MODE},
    )


app.include_router(health_router, tags=["Health"])
app.include_router(feedback_router, prefix="/v1", tags=["Feedback"])
app.include_router(decisions_router, prefix="/v1", tags=["Decisions"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {"service": "DecisionOS", "version": "0.1.0", "docs": "/docs"}
