from fastapi import APIRouter, Request

from nhs_interop.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for Docker and load balancers."""
    services = getattr(request.app.state, "services", None)
    return {
        "status": "healthy",
        "service": "nhs-interop-core",
        "scheduler_running": bool(services and services.scheduler.running),
    }


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {"message": f"Welcome to {settings.app_name}", "docs": "/docs", "health": "/health"}
