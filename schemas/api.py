"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Generic, TypeVar, Union
from datetime import datetime
from models.base import utcnow
from schemas.execution import JobExecutionState
from schemas.records import SkippedItem

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    request_id: str
    api_latency_ms: int
    data: T


# ============================================================================
# Job Launch Schemas
# ============================================================================

class JobLaunchRequest(BaseModel):
    """
    Parameters of a job launch.

    ``parameters`` takes JSON-typed values directly; ``expressions`` takes
    ``name(type)=value`` strings for types JSON lacks (date, datetime).
    """
    parameters: Dict[str, Union[bool, int, float, str]] = Field(default_factory=dict)
    expressions: List[str] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "parameters": {"input.file": "data/customers.csv", "min.age": 18},
                "expressions": ["run.date(date)=2024-01-15"]
            }
        }


class JobExecutionResponse(APIResponse[JobExecutionState]):
    """A job execution with the state of each step"""
    pass


class SkipListResponse(APIResponse[List[SkippedItem]]):
    """Skip records of one step, ordered by offset"""
    job_execution_id: int
    step_name: str
    total: int


class StopResponse(BaseModel):
    job_execution_id: int
    stopping: bool
    message: str


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    database_connected: bool
    running_executions: int = 0
    environment: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    # Declared last so the validator sees the fields above
    status: str = Field("healthy", description="Overall system status: healthy, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Unhealthy whenever the execution store is unreachable"""
        if not values.get("database_connected", False):
            return "unhealthy"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "running_executions": 1,
                "environment": "production"
            }
        }


class ErrorResponse(BaseModel):
    """Error body returned for rejected requests"""
    detail: Union[str, Dict[str, Any]]
