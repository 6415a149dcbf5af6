"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for the records flowing through the
chunk loop, for execution state, and for API request/response validation:

Schemas:
    records: Raw records, typed customer records and skipped items
    execution: Step and job execution state
    api: API endpoint request/response schemas

Usage:
    from schemas.records import RawRecord, CustomerRecord, SkippedItem
    from schemas.execution import ExecutionState, JobExecutionState
    from schemas.api import JobLaunchRequest, HealthCheckResponse

Validation:
    Record schemas coerce source text into typed values; a failed validation
    becomes a MappingError in the mapper and is routed to the skip policy.
"""
