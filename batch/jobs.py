"""
Job definitions available to the API, the scheduler and the scripts.

Every builder returns a fresh Job so each execution owns its own reader and
writer handles.
"""

from typing import Callable, Dict, Optional
from batch.job import Job
from batch.mappers.field_set_mapper import FieldSetMapper
from batch.parameters import JobParameters
from batch.processors.item_processors import CustomerItemProcessor
from batch.readers.flat_file_reader import FlatFileRecordSource
from batch.step import ChunkStep
from batch.writers.sqlalchemy_writer import SqlAlchemyItemWriter
from core.config import Settings, StepSettings, settings as default_settings
from models.customer import Customer
from schemas.records import CustomerRecord

CUSTOMER_IMPORT_JOB = "customerImportJob"
CUSTOMER_FIELDS = ["customer_id", "name", "age", "email"]


def build_customer_import_job(
    parameters: Optional[JobParameters] = None,
    config: Optional[Settings] = None
) -> Job:
    """
    Import customers from a delimited file into the customers table.

    Parameters:
        input.file (str): File to read, defaults to SOURCE_LOCATION
        min.age (int): Filter out customers younger than this (optional)
    """
    parameters = parameters or JobParameters()
    config = config or default_settings

    source_location = parameters.get("input.file", config.SOURCE_LOCATION)

    reader = FlatFileRecordSource(
        source_location,
        field_names=CUSTOMER_FIELDS,
        delimiter=config.SOURCE_DELIMITER,
        header=True
    )

    step = ChunkStep(
        name="importCustomers",
        reader=reader,
        mapper=FieldSetMapper(CustomerRecord, CUSTOMER_FIELDS),
        processor=CustomerItemProcessor(min_age=parameters.get("min.age")),
        writer=SqlAlchemyItemWriter(Customer, index_elements=["customer_id"]),
        config=StepSettings.from_settings(config).model_copy(
            update={"source_location": source_location}
        )
    )

    return Job(CUSTOMER_IMPORT_JOB, [step])


JobFactory = Callable[..., Job]

JOB_FACTORIES: Dict[str, JobFactory] = {
    CUSTOMER_IMPORT_JOB: build_customer_import_job,
}
