"""
In-memory record source backed by a pandas DataFrame
"""

import pandas as pd
from typing import Any, List, Optional, Sequence
from schemas.records import RawRecord
from core.exceptions import SourceUnavailableError
from batch.readers.flat_file_reader import normalize_column_name
import logging

logger = logging.getLogger(__name__)


def _to_text(value: Any) -> str:
    if value is None or (not isinstance(value, (list, tuple)) and pd.isna(value)):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    return str(value)


class DataFrameRecordSource:
    """
    Emit DataFrame rows as raw records.

    Values are stringified so the same mapper serves flat files and frames;
    missing values become empty strings and integral floats lose their ``.0``.
    Offsets are 1-based row positions.
    """

    def __init__(self, frame: pd.DataFrame, columns: Optional[Sequence[str]] = None):
        self.frame = frame
        self.columns = list(columns) if columns else None
        self._rows = None
        self._position = 0

    @property
    def field_names(self) -> List[str]:
        columns = self.columns or [str(c) for c in self.frame.columns]
        return [normalize_column_name(c) for c in columns]

    @property
    def position(self) -> int:
        return self._position

    def open(self, start_offset: int = 0) -> None:
        if not isinstance(self.frame, pd.DataFrame):
            raise SourceUnavailableError(
                "Record source frame is not a DataFrame",
                context={"location": type(self.frame).__name__}
            )

        frame = self.frame[self.columns] if self.columns else self.frame
        remaining = frame.iloc[start_offset:]
        self._rows = remaining.itertuples(index=False, name=None)
        self._position = min(start_offset, len(frame))

        logger.info(f"Opened in-memory frame ({len(frame)} rows) at offset {self._position}")

    def read(self) -> Optional[RawRecord]:
        if self._rows is None:
            raise RuntimeError("Record source is not open")

        row = next(self._rows, None)
        if row is None:
            return None

        self._position += 1
        return RawRecord(offset=self._position, fields=tuple(_to_text(v) for v in row))

    def close(self) -> None:
        self._rows = None
