"""
Main FastAPI application entry point
"""
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.config import settings
from core.exceptions import RealtyFlowError
from core.logging import get_logger
from provider_gateway.api import router as gateway_router
from provider_gateway.factory import get_gateway_factory

logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
)


# Exception handlers
@app.exception_handler(RealtyFlowError)
async def realtyflow_error_handler(request: Request, exc: RealtyFlowError):
    """Handle custom RealtyFlow errors"""
    logger.error(
        f"RealtyFlow error - error_code: {exc.error_code}, details: {exc.details}, path: {request.url.path}"
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Custom metrics endpoint
@app.get("/metrics", include_in_schema=False)
async def prometheus_metrics():
    """Expose metrics for Prometheus scraping"""
    if not settings.prometheus_enabled:
        return JSONResponse(status_code=404, content={"error": "Metrics not enabled"})

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Startup event
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    logger.info(f"Starting RealtyFlow version={settings.app_version} environment={settings.environment}")


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("Shutting down RealtyFlow")
    await get_gateway_factory().close()


app.include_router(gateway_router)
