"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobStatusSchema(BaseModel):
    """State of one registered job"""

    name: str
    schedule: str
    running: bool
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    error: Optional[str] = None
    last_report: Optional[Dict[str, Any]] = None


class JobListResponse(BaseModel):
    """Response for GET /v1/jobs"""

    jobs: List[JobStatusSchema]


class JobRunRequest(BaseModel):
    """Optional body for POST /v1/jobs/{name}/run"""

    timeout_seconds: Optional[float] = Field(None, gt=0, description="Abort the run after this many seconds")


class JobRunResponse(BaseModel):
    """Response for a successful manual run"""

    job: str
    success: bool
    report: Optional[Dict[str, Any]] = None
