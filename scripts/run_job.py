#!/usr/bin/env python3
"""
Run (or restart) a batch job from the command line.

Usage:
    python3 scripts/run_job.py [--job <name>] [name(type)=value ...]

Examples:
    # Import the configured customer file for a given day
    python3 scripts/run_job.py "run.date(date)=2024-01-15"

    # Import another file, filtering out minors
    python3 scripts/run_job.py input.file=data/customers_2.csv "min.age(int)=18"

Running the same command again after a failure resumes the execution from its
last committed chunk. Exit code is 0 only when the execution COMPLETED.
"""

import argparse
import asyncio
import logging
import sys
import os
from typing import List, Optional

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from batch.job import JobController
from batch.jobs import CUSTOMER_IMPORT_JOB, JOB_FACTORIES
from batch.parameters import JobParameters
from batch.tracker import ExecutionTracker
from core.config import settings
from core.database import build_engine, build_session_factory, create_schema
from core.exceptions import BatchException
from core.logging import setup_logging
from models.base import BatchStatus

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a batch job; re-running with the same parameters restarts it.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "parameters",
        nargs="*",
        help="Job parameters as name(type)=value (type defaults to str).",
    )
    parser.add_argument(
        "--job",
        default=CUSTOMER_IMPORT_JOB,
        choices=sorted(JOB_FACTORIES),
        help=f"Job to run (default: {CUSTOMER_IMPORT_JOB}).",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL.",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running.",
    )
    return parser.parse_args(argv)


async def run_job(
    job_name: str,
    parameters: JobParameters,
    database_url: Optional[str] = None,
    create_tables: bool = False
) -> BatchStatus:
    """Run one job execution to completion and return its final status"""
    engine = build_engine(database_url or settings.DATABASE_URL)
    try:
        if create_tables:
            await create_schema(engine)

        controller = JobController(ExecutionTracker(build_session_factory(engine)))
        job = JOB_FACTORIES[job_name](parameters, settings)
        execution = await controller.run_job(job, parameters)

        for step in execution.steps:
            logger.info(
                f"Step '{step.step_name}': {step.status.value} read={step.read_count} "
                f"written={step.write_count} skipped={step.skip_count} "
                f"filtered={step.filter_count} offset={step.last_committed_offset}"
            )
        if execution.error_message:
            logger.error(f"Execution {execution.job_execution_id} failed: {execution.error_message}")

        return execution.status
    finally:
        await engine.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging()

    try:
        parameters = JobParameters.parse(args.parameters)
        status = asyncio.run(run_job(args.job, parameters, args.database_url, args.create_tables))
    except BatchException as e:
        logger.error(f"Job '{args.job}' not run: {e}", extra={"error_context": e.to_dict()})
        return 1

    logger.info(f"Job '{args.job}' finished with status {status.value}")
    return 0 if status == BatchStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
