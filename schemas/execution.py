"""
Pydantic schemas for job and step execution state
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import BatchStatus


class ExecutionState(BaseModel):
    """
    Execution state of one step.

    The chunk loop works on an in-memory copy and hands it to the tracker at
    every commit boundary; callers querying status always get a copy loaded
    from the store.
    """

    job_execution_id: int
    step_execution_id: int
    job_name: str
    step_name: str
    status: BatchStatus = BatchStatus.STARTING

    read_count: int = 0
    write_count: int = 0
    skip_count: int = 0
    filter_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    last_committed_offset: int = 0

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row, job_name: str) -> "ExecutionState":
        """Build from a StepExecution row"""
        return cls(
            job_execution_id=row.job_execution_id,
            step_execution_id=row.id,
            job_name=job_name,
            step_name=row.step_name,
            status=row.status,
            read_count=row.read_count,
            write_count=row.write_count,
            skip_count=row.skip_count,
            filter_count=row.filter_count,
            commit_count=row.commit_count,
            rollback_count=row.rollback_count,
            last_committed_offset=row.last_committed_offset,
            start_time=row.started_at,
            end_time=row.completed_at,
            error_message=row.error_message,
            error_details=row.error_details,
        )


class JobExecutionState(BaseModel):
    """Persisted state of a job execution and all of its steps"""

    job_execution_id: int
    job_name: str
    parameters: Dict[str, Any]
    parameters_hash: str
    status: BatchStatus
    restart_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None
    steps: List[ExecutionState] = Field(default_factory=list)

    @classmethod
    def from_row(cls, row) -> "JobExecutionState":
        """Build from a JobExecution row with its step executions loaded"""
        return cls(
            job_execution_id=row.id,
            job_name=row.job_name,
            parameters=row.parameters,
            parameters_hash=row.parameters_hash,
            status=row.status,
            restart_count=row.restart_count,
            start_time=row.started_at,
            end_time=row.completed_at,
            error_message=row.error_message,
            steps=[ExecutionState.from_row(step, row.job_name) for step in row.step_executions],
        )

    def step(self, step_name: str) -> Optional[ExecutionState]:
        for state in self.steps:
            if state.step_name == step_name:
                return state
        return None
