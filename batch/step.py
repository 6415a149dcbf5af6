# ============================================================================
# File: batch/step.py
# Description: Chunk-oriented step execution with skip and retry policies
# ============================================================================
"""
Chunk step - reads, maps, processes and writes records in chunks.

Each chunk is one unit of work:
- Records are read until the chunk holds ``chunk_size`` written candidates
  or the source is exhausted
- Mapping/processing failures are skipped (up to ``skip_limit`` in total)
- The writer call, the skip records and the new execution state commit in a
  single transaction; a failed write rolls all three back and the chunk is
  retried (up to ``retry_limit`` times) with exponential backoff
- ``last_committed_offset`` only advances on commit, so a restart resumes
  after the last committed chunk
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, List, Optional
from pydantic import BaseModel
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from batch.base import ItemProcessor, ItemWriter, RecordMapper, RecordSource
from batch.processors.item_processors import PassThroughItemProcessor
from batch.tracker import ExecutionTracker
from core.config import Settings, StepSettings, settings as default_settings
from core.exceptions import (
    BatchException,
    MalformedRecordError,
    MappingError,
    ProcessingError,
    SkipLimitExceededError,
    SkippableError,
    StoreUnavailableError,
    WriteError,
    WriteExhaustedError,
)
from models.base import BatchStatus, utcnow
from schemas.execution import ExecutionState
from schemas.records import SkippedItem
import logging

logger = logging.getLogger(__name__)


@dataclass
class Chunk:
    """Records consumed from the source for one commit"""

    items: List[Any] = field(default_factory=list)
    skips: List[SkippedItem] = field(default_factory=list)
    read_count: int = 0
    filter_count: int = 0
    last_offset: Optional[int] = None
    exhausted: bool = False

    def consume(self, offset: int) -> None:
        self.read_count += 1
        self.last_offset = offset


class ChunkStep:
    """
    One step of a job: source -> mapper -> processor -> writer.

    The reader, mapper, processor and writer are supplied when the job is
    assembled. Configuration is either given explicitly or snapshotted from
    the application settings when the step starts.
    """

    def __init__(
        self,
        name: str,
        reader: RecordSource,
        mapper: RecordMapper,
        writer: ItemWriter,
        processor: Optional[ItemProcessor] = None,
        config: Optional[StepSettings] = None,
        settings: Optional[Settings] = None
    ):
        self.name = name
        self.reader = reader
        self.mapper = mapper
        self.writer = writer
        self.processor = processor or PassThroughItemProcessor()
        self.config = config
        self.settings = settings or default_settings

    def snapshot_config(self) -> StepSettings:
        """Configuration this step will run with, frozen for one execution"""
        if self.config is not None:
            return self.config
        return StepSettings.from_settings(self.settings)

    async def execute(
        self,
        state: ExecutionState,
        tracker: ExecutionTracker,
        config: StepSettings,
        stop_event: Optional[asyncio.Event] = None
    ) -> ExecutionState:
        """
        Run the chunk loop from ``state.last_committed_offset``.

        Returns the final state (COMPLETED, FAILED or STOPPED) after it has
        been persisted. Record-level and chunk-level failures never escape;
        only a failure to persist the final state does.
        """
        logger.info(
            f"Step '{state.step_name}' of execution {state.job_execution_id} starting "
            f"after offset {state.last_committed_offset} "
            f"(chunk_size={config.chunk_size}, retry_limit={config.retry_limit}, "
            f"skip_limit={config.skip_limit})"
        )

        pending: List[SkippedItem] = []

        try:
            self.reader.open(state.last_committed_offset)
            try:
                while True:
                    if stop_event is not None and stop_event.is_set():
                        logger.warning(
                            f"Stop requested; step '{state.step_name}' stopping "
                            f"at offset {state.last_committed_offset}"
                        )
                        return await self._finish(tracker, state, BatchStatus.STOPPED)

                    chunk = self._read_chunk(state, config)
                    if chunk.read_count == 0:
                        break

                    pending = chunk.skips
                    state = await self._commit_chunk(tracker, state, chunk, config)
                    pending = []

                    if chunk.exhausted:
                        break

                    # Let stop requests and status queries in between chunks
                    await asyncio.sleep(0)
            finally:
                self.reader.close()

        except SkipLimitExceededError as e:
            return await self._fail(tracker, state, e, e.pending_skips)

        except WriteExhaustedError as e:
            failed = state.model_copy(update={
                "rollback_count": state.rollback_count + e.context.get("attempts", 0)
            })
            return await self._fail(tracker, failed, e, pending)

        except BatchException as e:
            return await self._fail(tracker, state, e, pending)

        except Exception as e:
            logger.exception(f"Unexpected error in step '{state.step_name}'")
            error = BatchException(
                "Unexpected error in step",
                context={
                    "step_name": state.step_name,
                    "last_committed_offset": state.last_committed_offset
                },
                original_exception=e
            )
            return await self._fail(tracker, state, error, pending)

        return await self._finish(tracker, state, BatchStatus.COMPLETED)

    # --------------------------------------------------
    # READ / MAP / PROCESS
    # --------------------------------------------------

    def _read_chunk(self, state: ExecutionState, config: StepSettings) -> Chunk:
        chunk = Chunk()

        while len(chunk.items) < config.chunk_size:
            try:
                record = self.reader.read()
            except MalformedRecordError as e:
                chunk.consume(e.offset)
                self._skip(chunk, state, config, e, e.offset, e.raw_content)
                continue

            if record is None:
                chunk.exhausted = True
                break

            chunk.consume(record.offset)

            try:
                item = self.mapper.map(record)
            except MappingError as e:
                self._skip(chunk, state, config, e, record.offset, record.raw_content)
                continue

            try:
                processed = self.processor.process(item)
            except ProcessingError as e:
                self._skip(chunk, state, config, e, record.offset, record.raw_content, item)
                continue

            if processed is None:
                chunk.filter_count += 1
                continue

            chunk.items.append(processed)

        return chunk

    def _skip(
        self,
        chunk: Chunk,
        state: ExecutionState,
        config: StepSettings,
        error: SkippableError,
        offset: int,
        raw_content: Optional[str],
        item: Any = None
    ) -> None:
        skipped = SkippedItem(
            step_name=state.step_name,
            offset=offset,
            error_type=type(error).__name__,
            reason=error.reason,
            raw_content=raw_content,
            item=item.model_dump(mode="json") if isinstance(item, BaseModel) else None
        )
        chunk.skips.append(skipped)

        logger.warning(
            f"Skipped record at offset {offset} in step '{state.step_name}': {error.reason}",
            extra={"error_context": error.to_dict()}
        )

        skip_count = state.skip_count + len(chunk.skips)
        if skip_count > config.skip_limit:
            raise SkipLimitExceededError(
                f"Skip limit of {config.skip_limit} exceeded",
                context={
                    "step_name": state.step_name,
                    "skip_count": skip_count,
                    "skip_limit": config.skip_limit,
                    "offset": offset
                },
                original_exception=error,
                pending_skips=list(chunk.skips)
            )

    # --------------------------------------------------
    # WRITE / COMMIT
    # --------------------------------------------------

    async def _commit_chunk(
        self,
        tracker: ExecutionTracker,
        state: ExecutionState,
        chunk: Chunk,
        config: StepSettings
    ) -> ExecutionState:
        attempts = config.retry_limit + 1

        for attempt in range(1, attempts + 1):
            committed = state.model_copy(update={
                "read_count": state.read_count + chunk.read_count,
                "write_count": state.write_count + len(chunk.items),
                "skip_count": state.skip_count + len(chunk.skips),
                "filter_count": state.filter_count + chunk.filter_count,
                "commit_count": state.commit_count + 1,
                "rollback_count": state.rollback_count + attempt - 1,
                "last_committed_offset": chunk.last_offset,
            })

            try:
                await self._write_chunk(tracker, committed, chunk, config)
            except WriteError as e:
                logger.warning(
                    f"Chunk write failed in step '{state.step_name}' "
                    f"(attempt {attempt}/{attempts}): {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                if attempt == attempts:
                    raise WriteExhaustedError(
                        f"Chunk write failed after {attempts} attempts",
                        context={
                            "step_name": state.step_name,
                            "attempts": attempts,
                            "last_committed_offset": state.last_committed_offset
                        },
                        original_exception=e
                    )
                delay = config.retry_backoff_seconds * (2 ** (attempt - 1))
                if delay:
                    await asyncio.sleep(delay)
                continue

            logger.info(
                f"Committed chunk {committed.commit_count} of step '{state.step_name}': "
                f"{len(chunk.items)} written, {len(chunk.skips)} skipped, "
                f"{chunk.filter_count} filtered, offset {committed.last_committed_offset}"
            )
            return committed

    async def _write_chunk(
        self,
        tracker: ExecutionTracker,
        committed: ExecutionState,
        chunk: Chunk,
        config: StepSettings
    ) -> None:
        """Write items, skip records and execution state in one transaction"""
        async with tracker.session_factory() as session:
            try:
                async with session.begin():
                    if chunk.items:
                        write = self.writer.write(session, list(chunk.items))
                        if config.write_timeout_seconds:
                            await asyncio.wait_for(write, timeout=config.write_timeout_seconds)
                        else:
                            await write
                    await tracker.update_execution(committed, session=session, skips=chunk.skips)
            except asyncio.TimeoutError as e:
                raise WriteError(
                    f"Chunk write timed out after {config.write_timeout_seconds}s",
                    context={"step_name": committed.step_name, "chunk_size": len(chunk.items)},
                    original_exception=e
                )
            except DBAPIError as e:
                if e.connection_invalidated:
                    raise StoreUnavailableError(
                        "Lost connection to the store while committing chunk",
                        context={"operation": "COMMIT", "step_name": committed.step_name},
                        original_exception=e
                    )
                raise WriteError(
                    "Failed to commit chunk",
                    context={"step_name": committed.step_name, "chunk_size": len(chunk.items)},
                    original_exception=e
                )
            except SQLAlchemyError as e:
                raise WriteError(
                    "Failed to commit chunk",
                    context={"step_name": committed.step_name, "chunk_size": len(chunk.items)},
                    original_exception=e
                )

    # --------------------------------------------------
    # FINAL STATE
    # --------------------------------------------------

    async def _finish(
        self,
        tracker: ExecutionTracker,
        state: ExecutionState,
        status: BatchStatus
    ) -> ExecutionState:
        final = state.model_copy(update={"status": status, "end_time": utcnow()})
        await tracker.update_execution(final)

        logger.info(
            f"Step '{state.step_name}' {status.value}: read={final.read_count} "
            f"written={final.write_count} skipped={final.skip_count} "
            f"filtered={final.filter_count} commits={final.commit_count} "
            f"rollbacks={final.rollback_count}"
        )
        return final

    async def _fail(
        self,
        tracker: ExecutionTracker,
        state: ExecutionState,
        error: BatchException,
        pending_skips: List[SkippedItem]
    ) -> ExecutionState:
        logger.error(
            f"Step '{state.step_name}' failed: {error.message}",
            extra={"error_context": error.to_dict()}
        )

        final = state.model_copy(update={
            "status": BatchStatus.FAILED,
            "end_time": utcnow(),
            "error_message": str(error),
            "error_details": error.to_dict(),
        })
        await tracker.update_execution(final, skips=pending_skips)
        return final
