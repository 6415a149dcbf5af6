"""
Chunk-oriented batch engine.

This package contains the components a batch job is assembled from and the
machinery that runs it:

Modules:
    base: Capability interfaces (RecordSource, RecordMapper, ItemProcessor, ItemWriter)
    parameters: JobParameters, the identity of one job run
    step: ChunkStep, the read-process-write loop with skip and retry policies
    tracker: ExecutionTracker, durable job/step state and the skip log
    job: Job and JobController (ordered steps, restart, stop)
    jobs: Job definitions (customer import)
    scheduler: APScheduler integration for interval launches

Subpackages:
    readers: Record sources (delimited files, pandas DataFrames)
    mappers: Raw record to typed record mapping
    processors: Item processors (filters and transformations)
    writers: Transactional item writers

Architecture:
    Each chunk is one transaction:

    1. Read - up to chunk_size records, skipping bad ones within skip_limit
    2. Process - map, validate and filter each record
    3. Write - items, skip records and execution state commit together;
       a failed write rolls back and is retried up to retry_limit times

    A restarted execution resumes after its last committed chunk.

Usage:
    from batch.job import JobController
    from batch.jobs import build_customer_import_job
    from batch.parameters import JobParameters
    from batch.tracker import ExecutionTracker

Example:
    controller = JobController(ExecutionTracker(session_factory))
    parameters = JobParameters({"input.file": "data/customers.csv"})

    execution = await controller.run_job(
        build_customer_import_job(parameters), parameters
    )
    print(execution.status, execution.step("importCustomers").write_count)

Error Handling:
    All components raise the exceptions in core.exceptions. Record-level
    errors are skipped, write errors are retried, and anything else fails the
    step with its error details persisted.
"""
