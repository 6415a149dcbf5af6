"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class, portable column types and BatchStatus
    job_execution: Job and step execution state (restart and audit)
    skip_record: Append-only log of skipped records
    customer: Business table written by the customer import job

Database Schema:
    All models inherit from the Base declarative class. JSON columns become
    JSONB on PostgreSQL; integer keys autoincrement on SQLite as well.

Usage:
    from models import JobExecution, StepExecution, SkipRecord, Customer
    from models.base import BatchStatus

Relationships:
    - JobExecution → StepExecution (one-to-many, one row per step)
    - StepExecution → SkipRecord (one-to-many, ordered by offset)
"""

from models.base import Base, BatchStatus
from models.job_execution import JobExecution, StepExecution
from models.skip_record import SkipRecord
from models.customer import Customer

__all__ = [
    "Base",
    "BatchStatus",
    "JobExecution",
    "StepExecution",
    "SkipRecord",
    "Customer",
]
