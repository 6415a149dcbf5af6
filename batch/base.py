"""
Capability interfaces for the components a chunk step is assembled from.

Implementations are selected when a job is assembled and need not inherit
from anything here; any object with the right methods fits.
"""

from typing import Any, List, Optional, Protocol, runtime_checkable
from sqlalchemy.ext.asyncio import AsyncSession
from schemas.records import RawRecord


@runtime_checkable
class RecordSource(Protocol):
    """
    Lazy, finite, restartable sequence of raw records.

    Responsibilities:
    - ``open(start_offset)`` positions the source after ``start_offset``
      records; raises SourceUnavailableError if the medium cannot be opened
    - ``read()`` returns the next RawRecord, or None at the end; raises
      MalformedRecordError for a bad record and stays usable afterwards
    - ``close()`` releases the medium
    """

    def open(self, start_offset: int = 0) -> None:
        ...

    def read(self) -> Optional[RawRecord]:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class RecordMapper(Protocol):
    """Pure conversion of a raw record; raises MappingError on bad fields"""

    def map(self, record: RawRecord) -> Any:
        ...


@runtime_checkable
class ItemProcessor(Protocol):
    """
    Pure transformation of one domain record.

    Returns the (possibly new) record, or None to filter it out. Raises
    ProcessingError to route the record to the skip policy.
    """

    def process(self, item: Any) -> Optional[Any]:
        ...


@runtime_checkable
class ItemWriter(Protocol):
    """
    Persists one chunk inside the transaction owned by the caller.

    Writers never commit or roll back; raising WriteError makes the caller
    roll back and retry the whole chunk.
    """

    async def write(self, session: AsyncSession, items: List[Any]) -> int:
        ...
