from sqlalchemy import Column, BigInteger, String, Text, DateTime, Integer, ForeignKey, Index
from models.base import Base, BigIntegerKey, JSONType, utcnow


class SkipRecord(Base):
    """
    Append-only log of records skipped by the chunk loop.

    Purpose:
    - Manual reconciliation of records that never reached the store
    - Debugging of mapping and processing failures

    Design:
    - Never updated after insert
    - One row per (step execution, offset); a record re-read after a restart
      does not produce a second row
    """
    __tablename__ = "skip_records"

    id = Column(BigIntegerKey, primary_key=True, autoincrement=True)
    job_execution_id = Column(BigInteger, ForeignKey("job_executions.id"), nullable=False, index=True)
    step_execution_id = Column(BigInteger, ForeignKey("step_executions.id"), nullable=False)
    step_name = Column(String(100), nullable=False)

    record_offset = Column(Integer, nullable=False)
    raw_content = Column(Text, nullable=True)
    item = Column(JSONType, nullable=True)  # Domain record when processing failed

    error_type = Column(String(100), nullable=False)
    reason = Column(Text, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_skip_step_offset", "step_execution_id", "record_offset", unique=True),
    )
