"""
Execution tracker - durable job/step state and the skip log.

The tracker is the only component that reads or writes the execution tables.
Every method runs in its own transaction unless a session is passed in, in
which case the caller owns the transaction (the chunk loop uses this to commit
business data and execution state together).
"""

import asyncio
from contextlib import contextmanager
from typing import Dict, List, Optional, Sequence
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from batch.parameters import JobParameters
from core.config import StepSettings
from core.database import dialect_insert
from core.exceptions import (
    DuplicateExecutionError,
    ExecutionAlreadyRunningError,
    ExecutionNotFoundError,
    StoreUnavailableError,
)
from models.base import BatchStatus, utcnow
from models.job_execution import JobExecution, StepExecution
from models.skip_record import SkipRecord
from schemas.execution import ExecutionState, JobExecutionState
from schemas.records import SkippedItem
import logging

logger = logging.getLogger(__name__)


@contextmanager
def _store_errors(operation: str, table_name: str):
    """Translate database failures into StoreUnavailableError"""
    try:
        yield
    except SQLAlchemyError as e:
        raise StoreUnavailableError(
            "Execution store operation failed",
            context={"operation": operation, "table_name": table_name},
            original_exception=e
        )


class ExecutionTracker:
    """
    Persist and query job/step execution state.

    Responsibilities:
    - Idempotent execution creation keyed by (job_name, parameters hash)
    - Step state updates, serialized per job execution
    - Append-only skip log with ordered retrieval per step
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock(self, job_execution_id: int) -> asyncio.Lock:
        lock = self._locks.get(job_execution_id)
        if lock is None:
            lock = self._locks[job_execution_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Job executions
    # ------------------------------------------------------------------

    async def create_execution(self, job_name: str, parameters: JobParameters) -> JobExecutionState:
        """
        Create a job execution, or reopen a previous one that did not complete.

        Raises:
            DuplicateExecutionError: identical parameters already COMPLETED
        """
        parameters_hash = parameters.identity_hash()

        with _store_errors("UPSERT", JobExecution.__tablename__):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        result = await session.execute(
                            select(JobExecution)
                            .where(
                                JobExecution.job_name == job_name,
                                JobExecution.parameters_hash == parameters_hash
                            )
                            .with_for_update()
                        )
                        execution = result.scalar_one_or_none()

                        if execution is None:
                            execution = JobExecution(
                                job_name=job_name,
                                parameters=parameters.to_dict(),
                                parameters_hash=parameters_hash,
                                status=BatchStatus.STARTING,
                                restart_count=0
                            )
                            session.add(execution)
                            await session.flush()
                            logger.info(f"Created execution {execution.id} for job '{job_name}'")

                        elif not execution.status.is_restartable:
                            raise DuplicateExecutionError(
                                "Job already completed with identical parameters",
                                context={
                                    "job_name": job_name,
                                    "parameters_hash": parameters_hash,
                                    "job_execution_id": execution.id
                                }
                            )

                        else:
                            if execution.status.is_running:
                                logger.warning(
                                    f"Execution {execution.id} of job '{job_name}' was left "
                                    f"{execution.status.value} by an interrupted process; restarting"
                                )
                            else:
                                logger.info(
                                    f"Restarting {execution.status.value} execution {execution.id} "
                                    f"of job '{job_name}'"
                                )
                            execution.status = BatchStatus.STARTING
                            execution.restart_count += 1
                            execution.completed_at = None
                            execution.duration_seconds = None
                            execution.error_message = None

                        execution_id = execution.id
            except IntegrityError as e:
                # Another process inserted the same identity between our SELECT and INSERT
                raise ExecutionAlreadyRunningError(
                    "Job execution with identical parameters is being created concurrently",
                    context={"job_name": job_name, "parameters_hash": parameters_hash},
                    original_exception=e
                )

        return await self.load_execution(execution_id)

    async def mark_job_started(self, job_execution_id: int) -> None:
        with _store_errors("UPDATE", JobExecution.__tablename__):
            async with self.session_factory() as session:
                async with session.begin():
                    execution = await self._get_job_row(session, job_execution_id, lock=True)
                    execution.status = BatchStatus.STARTED
                    execution.started_at = utcnow()

    async def finish_job_execution(
        self,
        job_execution_id: int,
        status: BatchStatus,
        error_message: Optional[str] = None
    ) -> None:
        """Record the final status of a job execution and drop its update lock"""
        try:
            with _store_errors("UPDATE", JobExecution.__tablename__):
                async with self.session_factory() as session:
                    async with session.begin():
                        execution = await self._get_job_row(session, job_execution_id, lock=True)
                        execution.status = status
                        execution.completed_at = utcnow()
                        if execution.started_at:
                            execution.duration_seconds = (
                                execution.completed_at - execution.started_at
                            ).total_seconds()
                        execution.error_message = error_message
        finally:
            self._locks.pop(job_execution_id, None)

    async def load_execution(self, job_execution_id: int) -> JobExecutionState:
        """
        Load the persisted state of a job execution and its steps.

        Raises:
            ExecutionNotFoundError: no such execution
        """
        with _store_errors("SELECT", JobExecution.__tablename__):
            async with self.session_factory() as session:
                execution = await self._get_job_row(session, job_execution_id)
                return JobExecutionState.from_row(execution)

    async def find_execution(self, job_name: str, parameters: JobParameters) -> Optional[JobExecutionState]:
        """Look an execution up by job name and parameters"""
        with _store_errors("SELECT", JobExecution.__tablename__):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(JobExecution)
                    .options(selectinload(JobExecution.step_executions))
                    .where(
                        JobExecution.job_name == job_name,
                        JobExecution.parameters_hash == parameters.identity_hash()
                    )
                )
                execution = result.scalar_one_or_none()
                return JobExecutionState.from_row(execution) if execution else None

    # ------------------------------------------------------------------
    # Step executions
    # ------------------------------------------------------------------

    async def open_step_execution(
        self,
        job_execution_id: int,
        job_name: str,
        step_name: str,
        config: StepSettings
    ) -> ExecutionState:
        """
        Create or reopen the execution row of a step.

        A COMPLETED step is returned untouched so the caller can skip it. Any
        other step keeps its counters and restart offset and moves to STARTED.
        """
        with _store_errors("UPSERT", StepExecution.__tablename__):
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(StepExecution)
                        .where(
                            StepExecution.job_execution_id == job_execution_id,
                            StepExecution.step_name == step_name
                        )
                        .with_for_update()
                    )
                    step = result.scalar_one_or_none()

                    if step is None:
                        step = StepExecution(
                            job_execution_id=job_execution_id,
                            step_name=step_name,
                            read_count=0,
                            write_count=0,
                            skip_count=0,
                            filter_count=0,
                            commit_count=0,
                            rollback_count=0,
                            last_committed_offset=0
                        )
                        session.add(step)

                    if step.status != BatchStatus.COMPLETED:
                        step.status = BatchStatus.STARTED
                        step.started_at = utcnow()
                        step.completed_at = None
                        step.error_message = None
                        step.error_details = None
                        step.config_snapshot = config.model_dump()

                    await session.flush()
                    return ExecutionState.from_row(step, job_name)

    async def update_execution(
        self,
        state: ExecutionState,
        session: Optional[AsyncSession] = None,
        skips: Sequence[SkippedItem] = ()
    ) -> None:
        """
        Persist a step's execution state, and any skip records with it.

        With ``session`` the write joins the caller's transaction; otherwise it
        is committed before returning. Updates of one job execution are
        serialized.
        """
        async with self._lock(state.job_execution_id):
            with _store_errors("UPDATE", StepExecution.__tablename__):
                if session is not None:
                    await self._write_state(session, state, skips)
                    return

                async with self.session_factory() as own_session:
                    async with own_session.begin():
                        await self._write_state(own_session, state, skips)

    async def _write_state(
        self,
        session: AsyncSession,
        state: ExecutionState,
        skips: Sequence[SkippedItem]
    ) -> None:
        result = await session.execute(
            select(StepExecution)
            .where(StepExecution.id == state.step_execution_id)
            .with_for_update()
        )
        step = result.scalar_one_or_none()
        if step is None:
            raise ExecutionNotFoundError(
                "Step execution not found",
                context={"step_execution_id": state.step_execution_id}
            )

        step.status = state.status
        step.read_count = state.read_count
        step.write_count = state.write_count
        step.skip_count = state.skip_count
        step.filter_count = state.filter_count
        step.commit_count = state.commit_count
        step.rollback_count = state.rollback_count
        step.last_committed_offset = state.last_committed_offset
        step.completed_at = state.end_time
        step.error_message = state.error_message
        step.error_details = state.error_details

        if skips:
            await self._insert_skips(session, state, skips)

    async def _insert_skips(
        self,
        session: AsyncSession,
        state: ExecutionState,
        skips: Sequence[SkippedItem]
    ) -> None:
        rows = [
            {
                "job_execution_id": state.job_execution_id,
                "step_execution_id": state.step_execution_id,
                "step_name": skip.step_name,
                "record_offset": skip.offset,
                "raw_content": skip.raw_content,
                "item": skip.item,
                "error_type": skip.error_type,
                "reason": skip.reason,
                "created_at": utcnow()
            }
            for skip in skips
        ]
        # A record re-read after a restart is already in the log
        stmt = dialect_insert(session, SkipRecord.__table__).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["step_execution_id", "record_offset"])
        await session.execute(stmt)

    # ------------------------------------------------------------------
    # Skip log
    # ------------------------------------------------------------------

    async def list_skips(self, job_execution_id: int, step_name: str) -> List[SkippedItem]:
        """Skip records of one step, ordered by source offset"""
        with _store_errors("SELECT", SkipRecord.__tablename__):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(SkipRecord)
                    .where(
                        SkipRecord.job_execution_id == job_execution_id,
                        SkipRecord.step_name == step_name
                    )
                    .order_by(SkipRecord.record_offset)
                )
                return [
                    SkippedItem(
                        step_name=row.step_name,
                        offset=row.record_offset,
                        error_type=row.error_type,
                        reason=row.reason,
                        raw_content=row.raw_content,
                        item=row.item
                    )
                    for row in result.scalars().all()
                ]

    # ------------------------------------------------------------------

    async def _get_job_row(
        self,
        session: AsyncSession,
        job_execution_id: int,
        lock: bool = False
    ) -> JobExecution:
        stmt = (
            select(JobExecution)
            .options(selectinload(JobExecution.step_executions))
            .where(JobExecution.id == job_execution_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        execution = result.scalar_one_or_none()
        if execution is None:
            raise ExecutionNotFoundError(
                "Job execution not found",
                context={"job_execution_id": job_execution_id}
            )
        return execution
