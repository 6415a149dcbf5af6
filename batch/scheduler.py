import logging
from datetime import date
from typing import Callable, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from batch.job import JobController
from batch.jobs import CUSTOMER_IMPORT_JOB, JOB_FACTORIES
from batch.parameters import JobParameters
from core.config import Settings, settings as default_settings
from core.exceptions import BatchException, DuplicateExecutionError

logger = logging.getLogger(__name__)


class BatchScheduler:
    """
    Launch a job on an interval with a ``run.date`` parameter.

    One execution per day: later triggers on the same day hit the duplicate
    check and are only logged. A failed run is retried by the next trigger,
    which restarts the same execution.
    """

    def __init__(
        self,
        controller: JobController,
        job_name: str = CUSTOMER_IMPORT_JOB,
        job_factory: Optional[Callable] = None,
        config: Optional[Settings] = None,
        today: Callable[[], date] = date.today
    ):
        self.controller = controller
        self.job_name = job_name
        self.job_factory = job_factory or JOB_FACTORIES[job_name]
        self.config = config or default_settings
        self.today = today
        self.scheduler = AsyncIOScheduler()

    async def run_scheduled_job(self):
        """Job launched by the scheduler"""
        parameters = JobParameters({"run.date": self.today()})
        logger.info(f"Scheduler: launching '{self.job_name}' for {parameters['run.date']}")

        try:
            job = self.job_factory(parameters, self.config)
            execution = await self.controller.start_job(job, parameters)
        except DuplicateExecutionError as e:
            logger.info(f"Scheduler: '{self.job_name}' not launched - {e.message}")
            return None
        except BatchException as e:
            logger.error(
                f"Scheduler: '{self.job_name}' could not be launched - {e.message}",
                extra={"error_context": e.to_dict()}
            )
            return None

        return execution.job_execution_id

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_scheduled_job,
            trigger=IntervalTrigger(minutes=self.config.SCHEDULER_INTERVAL_MINUTES),
            id=f"batch_{self.job_name}",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info(
            f"Batch scheduler started ('{self.job_name}' every "
            f"{self.config.SCHEDULER_INTERVAL_MINUTES} minutes)"
        )

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Batch scheduler stopped")
