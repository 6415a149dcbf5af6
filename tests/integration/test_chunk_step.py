"""
Integration tests for the chunk loop: commit boundary, skip and retry policies
"""

import asyncio
import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from batch.jobs import CUSTOMER_FIELDS
from batch.mappers.field_set_mapper import FieldSetMapper
from batch.parameters import JobParameters
from batch.processors.item_processors import CustomerItemProcessor
from batch.readers.flat_file_reader import FlatFileRecordSource
from batch.step import ChunkStep
from batch.writers.sqlalchemy_writer import SqlAlchemyItemWriter
from core.exceptions import StoreUnavailableError, WriteError
from models.base import BatchStatus
from models.customer import Customer
from schemas.records import CustomerRecord


class RecordingWriter:
    """Upsert customers, optionally failing the first ``failures`` calls"""

    def __init__(self, failures=0, partial=False, error=WriteError):
        self.delegate = SqlAlchemyItemWriter(Customer, index_elements=["customer_id"])
        self.failures = failures
        self.partial = partial
        self.error = error
        self.calls = []

    async def write(self, session, items):
        self.calls.append([item.customer_id for item in items])
        if self.failures:
            self.failures -= 1
            if self.partial:
                # Part of the chunk reaches the session before the failure
                await self.delegate.write(session, items[:1])
            raise self.error("injected write failure", context={"chunk_size": len(items)})
        return await self.delegate.write(session, items)


class FailingAtChunkWriter(RecordingWriter):
    """Write normally until chunk ``fail_at``, then fail every attempt after a partial write"""

    def __init__(self, fail_at):
        super().__init__()
        self.fail_at = fail_at

    async def write(self, session, items):
        self.calls.append([item.customer_id for item in items])
        if len(self.calls) >= self.fail_at:
            await self.delegate.write(session, items[:1])
            raise WriteError("injected write failure")
        return await self.delegate.write(session, items)


def customer_rows(count, start=1):
    return [f"{i},Customer {i},{20 + i},c{i}@example.com" for i in range(start, start + count)]


def build_step(path, config, writer=None, processor=None):
    return ChunkStep(
        name="importCustomers",
        reader=FlatFileRecordSource(path, field_names=CUSTOMER_FIELDS),
        mapper=FieldSetMapper(CustomerRecord, CUSTOMER_FIELDS),
        processor=processor or CustomerItemProcessor(),
        writer=writer or RecordingWriter(),
        config=config
    )


async def execute(tracker, step, stop_event=None):
    execution = await tracker.create_execution("testJob", JobParameters({"run.id": 1}))
    config = step.snapshot_config()
    state = await tracker.open_step_execution(execution.job_execution_id, "testJob", step.name, config)
    return await step.execute(state, tracker, config, stop_event)


def assert_accounting(state):
    assert state.read_count == state.write_count + state.skip_count + state.filter_count


# --------------------------------------------------
# Reference scenarios
# --------------------------------------------------

@pytest.mark.asyncio
async def test_three_records_one_chunk(tracker, step_config, write_csv, fetch_customers):
    path = write_csv(customer_rows(3))
    writer = RecordingWriter()

    state = await execute(tracker, build_step(path, step_config(chunk_size=10), writer))

    assert state.status == BatchStatus.COMPLETED
    assert (state.read_count, state.write_count, state.skip_count) == (3, 3, 0)
    assert writer.calls == [[1, 2, 3]]
    assert len(await fetch_customers()) == 3

    persisted = (await tracker.load_execution(state.job_execution_id)).step("importCustomers")
    assert persisted.status == BatchStatus.COMPLETED
    assert persisted.end_time is not None
    assert persisted.last_committed_offset == 3


@pytest.mark.asyncio
async def test_malformed_record_is_skipped_and_logged(tracker, step_config, write_csv, fetch_customers):
    path = write_csv(["1,Alice,30,a@x.com", "2,Bob,41", "3,Carol,25,c@x.com"])

    state = await execute(tracker, build_step(path, step_config(skip_limit=1)))

    assert state.status == BatchStatus.COMPLETED
    assert (state.read_count, state.write_count, state.skip_count) == (3, 2, 1)

    skips = await tracker.list_skips(state.job_execution_id, "importCustomers")
    assert len(skips) == 1
    assert skips[0].offset == 2
    assert skips[0].error_type == "MalformedRecordError"
    assert skips[0].raw_content == "2,Bob,41"
    assert [c.customer_id for c in await fetch_customers()] == [1, 3]


@pytest.mark.asyncio
async def test_skip_log_keeps_original_line(tracker, step_config, write_csv):
    original = '2,"Smith, John",abc,j@x.com'
    path = write_csv(["1,Alice,30,a@x.com", original])

    state = await execute(tracker, build_step(path, step_config(skip_limit=1)))

    assert state.status == BatchStatus.COMPLETED
    skips = await tracker.list_skips(state.job_execution_id, "importCustomers")
    assert [(s.offset, s.error_type) for s in skips] == [(2, "MappingError")]
    assert skips[0].raw_content == original


@pytest.mark.asyncio
async def test_write_fails_twice_then_succeeds(tracker, step_config, write_csv, fetch_customers):
    path = write_csv(customer_rows(3))
    writer = RecordingWriter(failures=2, partial=True)

    state = await execute(tracker, build_step(path, step_config(retry_limit=3), writer))

    assert state.status == BatchStatus.COMPLETED
    assert len(writer.calls) == 3
    assert writer.calls[0] == writer.calls[2]
    assert state.commit_count == 1
    assert state.rollback_count == 2
    assert state.write_count == 3

    customers = await fetch_customers()
    assert [c.customer_id for c in customers] == [1, 2, 3]


# --------------------------------------------------
# Skip policy
# --------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("skip_limit", [0, 1, 3])
async def test_exactly_skip_limit_bad_records_completes(tracker, step_config, write_csv, skip_limit):
    rows = customer_rows(2) + [f"x{i},Bad" for i in range(skip_limit)]
    path = write_csv(rows)

    state = await execute(tracker, build_step(path, step_config(skip_limit=skip_limit, chunk_size=2)))

    assert state.status == BatchStatus.COMPLETED
    assert state.skip_count == skip_limit
    assert_accounting(state)


@pytest.mark.asyncio
@pytest.mark.parametrize("skip_limit", [0, 1, 3])
async def test_one_more_than_skip_limit_fails(tracker, step_config, write_csv, skip_limit):
    rows = customer_rows(2) + [f"x{i},Bad" for i in range(skip_limit + 1)]
    path = write_csv(rows)

    state = await execute(tracker, build_step(path, step_config(skip_limit=skip_limit, chunk_size=2)))

    assert state.status == BatchStatus.FAILED
    assert state.error_details["error_type"] == "SkipLimitExceededError"
    assert "SkipLimitExceededError" in state.error_message

    # Every skipped record is logged, including the one over the limit
    skips = await tracker.list_skips(state.job_execution_id, "importCustomers")
    assert len(skips) == skip_limit + 1


@pytest.mark.asyncio
async def test_mapping_and_processing_errors_are_skipped(tracker, step_config, write_csv):
    path = write_csv([
        "1,Alice,30,a@x.com",
        "abc,Bob,41,b@x.com",
        "3,Carol,25,not-an-email",
        "4,Dave,,d@x.com",
    ])

    state = await execute(tracker, build_step(path, step_config(skip_limit=5)))

    assert state.status == BatchStatus.COMPLETED
    assert state.skip_count == 2

    skips = await tracker.list_skips(state.job_execution_id, "importCustomers")
    assert [(s.offset, s.error_type) for s in skips] == [(2, "MappingError"), (3, "ProcessingError")]
    assert skips[0].item is None
    assert skips[1].item["customer_id"] == 3
    assert "customer_id" in skips[0].reason


@pytest.mark.asyncio
async def test_filtered_records_are_counted(tracker, step_config, write_csv, fetch_customers):
    path = write_csv(["1,Kid,10,k@x.com", "2,Adult,40,a@x.com", "3,Unknown,,u@x.com", "4,Bad"])

    state = await execute(
        tracker,
        build_step(path, step_config(skip_limit=1, chunk_size=1), processor=CustomerItemProcessor(min_age=18))
    )

    assert state.status == BatchStatus.COMPLETED
    assert (state.read_count, state.write_count, state.skip_count, state.filter_count) == (4, 1, 1, 2)
    assert_accounting(state)
    assert [c.customer_id for c in await fetch_customers()] == [2]


# --------------------------------------------------
# Commit boundary
# --------------------------------------------------

@pytest.mark.asyncio
async def test_empty_source(tracker, step_config, write_csv):
    writer = RecordingWriter()

    state = await execute(tracker, build_step(write_csv([]), step_config(), writer))

    assert state.status == BatchStatus.COMPLETED
    assert state.commit_count == 0
    assert state.last_committed_offset == 0
    assert writer.calls == []


@pytest.mark.asyncio
async def test_source_ending_on_chunk_boundary(tracker, step_config, write_csv):
    writer = RecordingWriter()

    state = await execute(tracker, build_step(write_csv(customer_rows(4)), step_config(chunk_size=2), writer))

    assert state.status == BatchStatus.COMPLETED
    assert writer.calls == [[1, 2], [3, 4]]
    assert state.commit_count == 2
    assert state.last_committed_offset == 4


@pytest.mark.asyncio
async def test_chunk_of_only_skips_commits_without_writing(tracker, step_config, write_csv):
    writer = RecordingWriter()
    path = write_csv(["x,Bad", "y,Bad"])

    state = await execute(tracker, build_step(path, step_config(skip_limit=2, chunk_size=5), writer))

    assert state.status == BatchStatus.COMPLETED
    assert writer.calls == []
    assert state.commit_count == 1
    assert state.last_committed_offset == 2


@pytest.mark.asyncio
async def test_offset_covers_trailing_skipped_records(tracker, step_config, write_csv):
    path = write_csv(customer_rows(2) + ["3,Bad"])

    state = await execute(tracker, build_step(path, step_config(skip_limit=1, chunk_size=2)))

    assert state.last_committed_offset == 3
    assert state.commit_count == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("fail_at", [1, 2, 3])
async def test_failed_chunk_leaves_no_partial_rows(tracker, step_config, write_csv, fetch_customers, fail_at):
    path = write_csv(customer_rows(6))
    writer = FailingAtChunkWriter(fail_at)

    state = await execute(tracker, build_step(path, step_config(chunk_size=2, retry_limit=1), writer))

    assert state.status == BatchStatus.FAILED
    assert state.error_details["error_type"] == "WriteExhaustedError"
    assert state.rollback_count == 2

    committed_chunks = fail_at - 1
    customers = await fetch_customers()
    assert [c.customer_id for c in customers] == list(range(1, committed_chunks * 2 + 1))
    assert state.last_committed_offset == committed_chunks * 2
    assert state.write_count == committed_chunks * 2


@pytest.mark.asyncio
async def test_exhausted_retries_keep_skips_of_failed_chunk(tracker, step_config, write_csv):
    path = write_csv(["1,Alice,30,a@x.com", "2,Bad"])
    writer = RecordingWriter(failures=10)

    state = await execute(tracker, build_step(path, step_config(skip_limit=1, retry_limit=2), writer))

    assert state.status == BatchStatus.FAILED
    assert len(writer.calls) == 3
    assert state.skip_count == 0

    skips = await tracker.list_skips(state.job_execution_id, "importCustomers")
    assert [s.offset for s in skips] == [2]


@pytest.mark.asyncio
async def test_retry_backoff_is_exponential(tracker, step_config, write_csv, monkeypatch):
    delays = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr("batch.step.asyncio.sleep", fake_sleep)
    writer = RecordingWriter(failures=3)

    state = await execute(
        tracker,
        build_step(write_csv(customer_rows(1)), step_config(retry_limit=3, retry_backoff_seconds=0.5), writer)
    )

    assert state.status == BatchStatus.COMPLETED
    assert [d for d in delays if d] == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_write_timeout_is_retried(tracker, step_config, write_csv, fetch_customers):
    class SlowOnceWriter(RecordingWriter):
        async def write(self, session, items):
            if not self.calls:
                self.calls.append("slow")
                await asyncio.sleep(5)
            return await super().write(session, items)

    writer = SlowOnceWriter()

    state = await execute(
        tracker,
        build_step(write_csv(customer_rows(2)), step_config(retry_limit=1, write_timeout_seconds=0.1), writer)
    )

    assert state.status == BatchStatus.COMPLETED
    assert state.rollback_count == 1
    assert len(await fetch_customers()) == 2


@pytest.mark.asyncio
async def test_commit_failure_is_retried(tracker, step_config, write_csv, fetch_customers):
    failures = {"remaining": 1}

    class ArmingWriter(RecordingWriter):
        async def write(self, session, items):
            session.sync_session.info["fail_commit"] = True
            return await super().write(session, items)

    def fail_commit(session):
        if session.info.pop("fail_commit", False) and failures["remaining"]:
            failures["remaining"] -= 1
            raise OperationalError("COMMIT", {}, Exception("deadlock detected"))

    event.listen(Session, "before_commit", fail_commit)
    try:
        writer = ArmingWriter()
        state = await execute(
            tracker,
            build_step(write_csv(customer_rows(3)), step_config(retry_limit=1), writer)
        )
    finally:
        event.remove(Session, "before_commit", fail_commit)

    assert state.status == BatchStatus.COMPLETED
    assert len(writer.calls) == 2
    assert state.rollback_count == 1
    assert state.commit_count == 1
    assert [c.customer_id for c in await fetch_customers()] == [1, 2, 3]


# --------------------------------------------------
# Fatal errors and stop)
# --------------------------------------------------

@pytest.mark.asyncio
async def test_missing_source_fails_step(tracker, step_config, tmp_path):
    writer = RecordingWriter()

    state = await execute(tracker, build_step(str(tmp_path / "missing.csv"), step_config(retry_limit=3), writer))

    assert state.status == BatchStatus.FAILED
    assert state.error_details["error_type"] == "SourceUnavailableError"
    assert writer.calls == []


@pytest.mark.asyncio
async def test_store_unavailable_is_not_retried(tracker, step_config, write_csv):
    writer = RecordingWriter(failures=1, error=StoreUnavailableError)

    state = await execute(tracker, build_step(write_csv(customer_rows(2)), step_config(retry_limit=3), writer))

    assert state.status == BatchStatus.FAILED
    assert state.error_details["error_type"] == "StoreUnavailableError"
    assert len(writer.calls) == 1


@pytest.mark.asyncio
async def test_unexpected_error_fails_step(tracker, step_config, write_csv):
    class BrokenProcessor:
        def process(self, item):
            raise KeyError("boom")

    state = await execute(
        tracker,
        build_step(write_csv(customer_rows(2)), step_config(), processor=BrokenProcessor())
    )

    assert state.status == BatchStatus.FAILED
    assert state.error_details["error_type"] == "BatchException"
    assert "boom" in state.error_details["original_error"]


@pytest.mark.asyncio
async def test_stop_is_honored_at_chunk_boundary(tracker, step_config, write_csv, fetch_customers):
    stop_event = asyncio.Event()

    class StoppingWriter(RecordingWriter):
        async def write(self, session, items):
            written = await super().write(session, items)
            stop_event.set()
            return written

    writer = StoppingWriter()

    state = await execute(
        tracker,
        build_step(write_csv(customer_rows(6)), step_config(chunk_size=2), writer),
        stop_event=stop_event
    )

    assert state.status == BatchStatus.STOPPED
    # The chunk in flight when the stop arrived is still committed
    assert writer.calls == [[1, 2]]
    assert state.last_committed_offset == 2
    assert len(await fetch_customers()) == 2

    persisted = (await tracker.load_execution(state.job_execution_id)).step("importCustomers")
    assert persisted.status == BatchStatus.STOPPED
