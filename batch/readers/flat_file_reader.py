"""
Delimited flat-file record source with restart support
"""

import csv
from pathlib import Path
from typing import List, Optional, Sequence
from schemas.records import RawRecord
from core.exceptions import MalformedRecordError, SourceUnavailableError
import logging

logger = logging.getLogger(__name__)


def normalize_column_name(name: str) -> str:
    """Strip whitespace, lowercase, spaces to underscores"""
    return name.strip().lower().replace(" ", "_")


class FlatFileRecordSource:
    """
    Read records lazily from a delimited text file.

    Supports:
    - Resuming after a committed offset (records are re-counted, not re-emitted)
    - Header normalization when field names are not given explicitly
    - Per-record MalformedRecordError for lines with the wrong field count

    One non-blank line is one record; quoted values may not span lines.
    Blank lines are ignored and do not take a position.
    """

    def __init__(
        self,
        file_path: str,
        field_names: Optional[Sequence[str]] = None,
        delimiter: str = ",",
        header: bool = True,
        encoding: str = "utf-8",
        quotechar: str = '"',
        strip_fields: bool = True
    ):
        if field_names is None and not header:
            raise ValueError("field_names are required when the file has no header")
        self.file_path = Path(file_path)
        self.field_names: Optional[List[str]] = list(field_names) if field_names else None
        self.delimiter = delimiter
        self.header = header
        self.encoding = encoding
        self.quotechar = quotechar
        self.strip_fields = strip_fields

        self._handle = None
        self._position = 0

    @property
    def position(self) -> int:
        """Offset of the last record returned (or rejected)"""
        return self._position

    def open(self, start_offset: int = 0) -> None:
        """
        Open the file and position it after ``start_offset`` records.

        Args:
            start_offset: Last committed offset of a previous run (0 = start)
        """
        if self._handle is not None:
            self.close()

        try:
            self._handle = self.file_path.open("r", encoding=self.encoding, newline="")
        except OSError as e:
            raise SourceUnavailableError(
                "Cannot open flat file",
                context={"location": str(self.file_path)},
                original_exception=e
            )

        self._position = 0

        if self.header:
            header_line = self._next_line()
            if header_line is not None and self.field_names is None:
                columns = self._tokenize(header_line)
                self.field_names = [normalize_column_name(c) for c in columns]
            elif header_line is None and self.field_names is None:
                self.field_names = []

        while self._position < start_offset:
            try:
                if self.read() is None:
                    break
            except MalformedRecordError:
                continue

        logger.info(
            f"Opened {self.file_path} at offset {self._position} "
            f"(requested {start_offset})"
        )

    def read(self) -> Optional[RawRecord]:
        """Return the next record, or None when the file is exhausted"""
        if self._handle is None:
            raise RuntimeError(f"Record source {self.file_path} is not open")

        line = self._next_line()
        if line is None:
            return None

        self._position += 1

        try:
            fields = self._tokenize(line)
        except csv.Error as e:
            raise MalformedRecordError(
                f"Line cannot be tokenized: {e}",
                offset=self._position,
                raw_content=line,
                context={"location": str(self.file_path)},
                original_exception=e
            )

        expected = len(self.field_names or [])
        if len(fields) != expected:
            raise MalformedRecordError(
                f"Expected {expected} fields, found {len(fields)}",
                offset=self._position,
                raw_content=line,
                context={
                    "location": str(self.file_path),
                    "expected_fields": expected,
                    "actual_fields": len(fields)
                }
            )

        return RawRecord(
            offset=self._position,
            fields=tuple(fields),
            delimiter=self.delimiter,
            line=line
        )

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _next_line(self) -> Optional[str]:
        try:
            for line in self._handle:
                line = line.rstrip("\r\n")
                if line.strip():
                    return line
        except UnicodeDecodeError as e:
            raise SourceUnavailableError(
                f"File is not valid {self.encoding}",
                context={"location": str(self.file_path), "after_offset": self._position},
                original_exception=e
            )
        return None

    def _tokenize(self, line: str) -> List[str]:
        reader = csv.reader(
            [line],
            delimiter=self.delimiter,
            quotechar=self.quotechar,
            strict=True
        )
        fields = next(reader, [])
        if self.strip_fields:
            fields = [f.strip() for f in fields]
        return fields
