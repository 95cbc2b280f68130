"""Dependency injection for FastAPI endpoints"""

from fastapi import HTTPException, Request

from capguard.services.scheduler import JobOrchestrator


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_orchestrator(request: Request) -> JobOrchestrator:
    """Orchestrator owned by the application lifespan"""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Job orchestrator not initialized")
    return orchestrator
