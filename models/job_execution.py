from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, BatchStatus, BigIntegerKey, JSONType, utcnow


class JobExecution(Base):
    """
    One row per job run, identified by job name and parameter hash.

    Purpose:
    - Idempotency key for triggers (job_name, parameters_hash)
    - Restart bookkeeping (restart_count, status of the last attempt)
    - Audit trail of the final outcome and the error that ended it
    """
    __tablename__ = "job_executions"

    id = Column(BigIntegerKey, primary_key=True, autoincrement=True)

    # Identity
    job_name = Column(String(100), nullable=False, index=True)
    parameters = Column(JSONType, nullable=False)
    parameters_hash = Column(String(64), nullable=False)

    # Run metadata
    status = Column(Enum(BatchStatus), default=BatchStatus.STARTING, nullable=False, index=True)
    restart_count = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    last_updated = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Error tracking
    error_message = Column(Text, nullable=True)

    # Relationships
    step_executions = relationship(
        "StepExecution",
        back_populates="job_execution",
        order_by="StepExecution.id",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_job_execution_identity", "job_name", "parameters_hash", unique=True),
    )


class StepExecution(Base):
    """
    Persisted execution state of one step of a job execution.

    Mutated only at chunk-commit boundaries and at step start/end. On restart
    the same row is reused and processing resumes after last_committed_offset.
    """
    __tablename__ = "step_executions"

    id = Column(BigIntegerKey, primary_key=True, autoincrement=True)
    job_execution_id = Column(BigInteger, ForeignKey("job_executions.id"), nullable=False, index=True)
    step_name = Column(String(100), nullable=False)

    status = Column(Enum(BatchStatus), default=BatchStatus.STARTING, nullable=False)

    # Statistics
    read_count = Column(Integer, default=0, nullable=False)
    write_count = Column(Integer, default=0, nullable=False)
    skip_count = Column(Integer, default=0, nullable=False)
    filter_count = Column(Integer, default=0, nullable=False)
    commit_count = Column(Integer, default=0, nullable=False)
    rollback_count = Column(Integer, default=0, nullable=False)

    # Restart position
    last_committed_offset = Column(Integer, default=0, nullable=False)

    # Timestamps
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    # Configuration snapshot
    config_snapshot = Column(JSONType, nullable=True)

    job_execution = relationship("JobExecution", back_populates="step_executions")

    __table_args__ = (
        Index("idx_step_execution_job_step", "job_execution_id", "step_name", unique=True),
    )
