"""
Write chunks into a SQL table with upsert logic (idempotency)
"""

from typing import Any, Dict, List, Sequence
from pydantic import BaseModel
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import dialect_insert
from core.exceptions import StoreUnavailableError, WriteError
from models.base import utcnow
import logging

logger = logging.getLogger(__name__)


class SqlAlchemyItemWriter:
    """
    Upsert a chunk of records into the table of an ORM model.

    Ensures:
    - No duplicate rows when a chunk is replayed after a restart
    - Updates existing rows if source data changes
    - Nothing is committed here; the chunk loop owns the transaction

    Errors:
    - Invalidated connections raise StoreUnavailableError (fatal)
    - Any other database error raises WriteError (chunk is retried)
    """

    def __init__(self, model, index_elements: Sequence[str]):
        self.model = model
        self.table = model.__table__
        self.index_elements = list(index_elements)

    async def write(self, session: AsyncSession, items: List[Any]) -> int:
        """
        Upsert items (INSERT ON CONFLICT UPDATE) inside the caller's transaction.

        Args:
            session: Session with an open transaction
            items: Pydantic models or mappings whose keys are column names

        Returns:
            Number of records written
        """
        if not items:
            return 0

        written = 0

        try:
            for item in items:
                values = self._to_values(item)

                stmt = dialect_insert(session, self.table).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=self.index_elements,
                    set_=self._update_set(stmt, values)
                )

                await session.execute(stmt)
                written += 1

        except DBAPIError as e:
            if e.connection_invalidated:
                raise StoreUnavailableError(
                    "Lost connection to the store while writing chunk",
                    context={"operation": "UPSERT", "table_name": self.table.name},
                    original_exception=e
                )
            raise WriteError(
                "Failed to write chunk",
                context={
                    "operation": "UPSERT",
                    "table_name": self.table.name,
                    "chunk_size": len(items),
                    "written_before_failure": written
                },
                original_exception=e
            )
        except SQLAlchemyError as e:
            raise WriteError(
                "Failed to write chunk",
                context={"operation": "UPSERT", "table_name": self.table.name, "chunk_size": len(items)},
                original_exception=e
            )

        logger.debug(f"Upserted {written} rows into {self.table.name}")
        return written

    def _to_values(self, item: Any) -> Dict[str, Any]:
        if isinstance(item, BaseModel):
            values = item.model_dump()
        else:
            values = dict(item)
        return {k: v for k, v in values.items() if k in self.table.columns}

    def _update_set(self, stmt, values: Dict[str, Any]) -> Dict[str, Any]:
        update = {
            name: stmt.excluded[name]
            for name in values
            if name not in self.index_elements
        }
        if "updated_at" in self.table.columns:
            update["updated_at"] = utcnow()
        return update
