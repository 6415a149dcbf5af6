"""
Jobs and the job controller.

A Job is an ordered list of chunk steps. The controller turns a (job,
parameters) pair into an execution, runs its steps in order and records the
final job status. Restarting with the same parameters resumes the same
execution: COMPLETED steps are skipped, the others continue from their last
committed offset.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Set, Tuple
from batch.parameters import JobParameters
from batch.step import ChunkStep
from batch.tracker import ExecutionTracker
from core.exceptions import ExecutionAlreadyRunningError, StoreError
from models.base import BatchStatus
from schemas.execution import JobExecutionState
import logging

logger = logging.getLogger(__name__)


class Job:
    """Named, ordered sequence of steps"""

    def __init__(self, name: str, steps: Sequence[ChunkStep]):
        if not steps:
            raise ValueError(f"Job '{name}' has no steps")

        step_names = [step.name for step in steps]
        if len(set(step_names)) != len(step_names):
            raise ValueError(f"Job '{name}' has duplicate step names: {step_names}")

        self.name = name
        self.steps = list(steps)

    def __repr__(self) -> str:
        return f"Job(name={self.name!r}, steps={[step.name for step in self.steps]!r})"


@dataclass
class _RunningExecution:
    task: asyncio.Task
    stop_event: asyncio.Event


class JobController:
    """
    Launches and supervises job executions.

    Each accepted execution runs in its own asyncio task, so independent
    executions progress concurrently. Within one execution steps run strictly
    in order.
    """

    def __init__(self, tracker: ExecutionTracker):
        self.tracker = tracker
        self._running: Dict[int, _RunningExecution] = {}
        self._claimed: Set[Tuple[str, str]] = set()

    async def start_job(self, job: Job, parameters: JobParameters) -> JobExecutionState:
        """
        Accept an execution and run it in the background.

        Raises:
            DuplicateExecutionError: identical parameters already COMPLETED
            ExecutionAlreadyRunningError: identical parameters running here
        """
        key = (job.name, parameters.identity_hash())
        if key in self._claimed:
            raise ExecutionAlreadyRunningError(
                "Job with identical parameters is already running",
                context={"job_name": job.name, "parameters_hash": key[1]}
            )

        self._claimed.add(key)
        try:
            execution = await self.tracker.create_execution(job.name, parameters)
        except BaseException:
            self._claimed.discard(key)
            raise

        job_execution_id = execution.job_execution_id
        stop_event = asyncio.Event()
        task = asyncio.create_task(
            self._execute(job, job_execution_id, stop_event),
            name=f"job-{job.name}-{job_execution_id}"
        )
        self._running[job_execution_id] = _RunningExecution(task=task, stop_event=stop_event)

        def _release(_task: asyncio.Task) -> None:
            self._running.pop(job_execution_id, None)
            self._claimed.discard(key)

        task.add_done_callback(_release)

        logger.info(
            f"Accepted execution {job_execution_id} of job '{job.name}' "
            f"(restart_count={execution.restart_count})"
        )
        return execution

    async def run_job(self, job: Job, parameters: JobParameters) -> JobExecutionState:
        """Start an execution and wait for its final state"""
        execution = await self.start_job(job, parameters)
        return await self.wait(execution.job_execution_id)

    async def wait(self, job_execution_id: int) -> JobExecutionState:
        """Wait for a running execution (if any) and return its persisted state"""
        running = self._running.get(job_execution_id)
        if running is not None:
            await running.task
        return await self.tracker.load_execution(job_execution_id)

    def stop(self, job_execution_id: int) -> bool:
        """
        Ask a running execution to stop at its next chunk boundary.

        Returns False when the execution is not running in this process.
        """
        running = self._running.get(job_execution_id)
        if running is None:
            return False
        running.stop_event.set()
        logger.info(f"Stop requested for execution {job_execution_id}")
        return True

    def is_running(self, job_execution_id: int) -> bool:
        return job_execution_id in self._running

    @property
    def running_count(self) -> int:
        return len(self._running)

    async def get_execution(self, job_execution_id: int) -> JobExecutionState:
        return await self.tracker.load_execution(job_execution_id)

    async def shutdown(self) -> None:
        """Stop every running execution and wait for them to settle"""
        running = list(self._running.values())
        for execution in running:
            execution.stop_event.set()
        if running:
            await asyncio.gather(*(execution.task for execution in running), return_exceptions=True)

    # --------------------------------------------------

    async def _execute(self, job: Job, job_execution_id: int, stop_event: asyncio.Event) -> BatchStatus:
        status = BatchStatus.COMPLETED
        error_message: Optional[str] = None

        try:
            await self.tracker.mark_job_started(job_execution_id)

            for step in job.steps:
                if stop_event.is_set():
                    status = BatchStatus.STOPPED
                    break

                config = step.snapshot_config()
                state = await self.tracker.open_step_execution(
                    job_execution_id, job.name, step.name, config
                )
                if state.status == BatchStatus.COMPLETED:
                    logger.info(f"Step '{step.name}' already completed; skipping")
                    continue

                state = await step.execute(state, self.tracker, config, stop_event)
                if state.status != BatchStatus.COMPLETED:
                    status = state.status
                    error_message = state.error_message
                    break

            await self.tracker.finish_job_execution(job_execution_id, status, error_message)

        except Exception as e:
            logger.exception(f"Execution {job_execution_id} of job '{job.name}' aborted")
            try:
                await self.tracker.finish_job_execution(job_execution_id, BatchStatus.FAILED, str(e))
            except StoreError as store_error:
                logger.error(
                    f"Could not record failure of execution {job_execution_id}: {store_error.message}",
                    extra={"error_context": store_error.to_dict()}
                )
            raise

        logger.info(f"Execution {job_execution_id} of job '{job.name}' finished: {status.value}")
        return status
