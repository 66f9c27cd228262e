"""
FastAPI application entry point.

Run with: uvicorn ismart_edge.api.main:app --reload --host 0.0.0.0 --port 8000
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ismart_edge import __version__
from ismart_edge.api.routes import ads, balances, loans, reconciliation, transfers, withdrawals
from ismart_edge.api.dependencies import initialize_services, is_initialized, shutdown_services
from ismart_edge.core.errors import ServiceError

logger = logging.getLogger(__name__)


# Create FastAPI app
app = FastAPI(
    title="i-SMART Edge Functions API",
    description="Balance transfers, BSK loans, ad mining, reconciliation and BEP-20 withdrawals",
    version=__version__
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.url.path} rejected ({exc.status_code}): {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, **exc.extra},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request body"
    if errors:
        first = errors[0]
        message = str(first.get("msg", message)).replace("Value error, ", "")
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        if field and first.get("type") == "missing":
            message = f"Missing required field: {field}"
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc) or "Internal server error"})


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    if not is_initialized():
        initialize_services()


@app.on_event("shutdown")
async def shutdown_event():
    """Close the database connection on application shutdown."""
    shutdown_services()


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "i-SMART Edge Functions API",
        "version": __version__,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(transfers.router)
app.include_router(reconciliation.router)
app.include_router(loans.router)
app.include_router(ads.router)
app.include_router(balances.router)
app.include_router(withdrawals.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
