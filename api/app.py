import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.config import LOG_LEVEL
from api.errors import ConcurrencyConflict, InsufficientCredits, RefundRejected, RunAlreadyActive
from api.logging_config import init_logging
from api.credits_api import router as credits_router, admin_router as credits_admin_router
from api.batch_api import router as batch_router, admin_router as batch_admin_router
from api.cron_api import router as cron_router
from db.init_db import main as init_db

logger = logging.getLogger(__name__)

def create_app() -> FastAPI:
    init_logging(LOG_LEVEL)
    init_db()

    app = FastAPI(title="Credit Ledger & Batch Checks API")
    app.include_router(credits_router)
    app.include_router(credits_admin_router)
    app.include_router(batch_router)
    app.include_router(batch_admin_router)
    app.include_router(cron_router)

    # -----------------------
    # Error mapping
    # -----------------------
    @app.exception_handler(InsufficientCredits)
    async def insufficient_credits_handler(request: Request, exc: InsufficientCredits):
        return JSONResponse(
            status_code=402,
            content={"detail": "Insufficient credits", "required": exc.required, "available": exc.available},
        )

    @app.exception_handler(RefundRejected)
    async def refund_rejected_handler(request: Request, exc: RefundRejected):
        return JSONResponse(status_code=409, content={"detail": str(exc), "reason": exc.reason})

    @app.exception_handler(RunAlreadyActive)
    async def run_active_handler(request: Request, exc: RunAlreadyActive):
        return JSONResponse(status_code=409, content={"detail": str(exc), "run_id": exc.run_id, "status": exc.status})

    @app.exception_handler(ConcurrencyConflict)
    async def conflict_handler(request: Request, exc: ConcurrencyConflict):
        logger.error("Giving up on contended balance: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "Balance busy, retry the request"})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": f"UNHANDLED: {type(exc).__name__}: {exc}"}
        )

    # -----------------------
    # Health
    # -----------------------
    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/")
    def root():
        return {"name": "Credit Ledger & Batch Checks API", "status": "running", "docs": "/docs"}

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.app:app", host="0.0.0.0", port=8000, reload=False)
