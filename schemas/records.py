"""
Pydantic schemas for records flowing through the chunk loop
"""

import csv
import io
from pydantic import BaseModel, Field, validator
from typing import Optional, Tuple, Dict, Any


class RawRecord(BaseModel):
    """
    One tokenized record exactly as read from a source.

    Immutable; ``offset`` is the 1-based position in the source and ``line``
    the untouched source text, when the source is line-based.
    """

    offset: int = Field(..., ge=1)
    fields: Tuple[str, ...]
    delimiter: str = ","
    line: Optional[str] = None

    class Config:
        frozen = True

    @property
    def raw_content(self) -> str:
        """Original line, or the fields written back as one delimited row"""
        if self.line is not None:
            return self.line
        buffer = io.StringIO()
        csv.writer(buffer, delimiter=self.delimiter, lineterminator="").writerow(self.fields)
        return buffer.getvalue()


class CustomerRecord(BaseModel):
    """
    Typed customer record produced by the mapper.

    Ensures:
    - Identifier is present and numeric
    - Name is non-empty
    - Age, when given, is a non-negative integer
    """

    customer_id: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=200)
    age: Optional[int] = Field(None, ge=0, le=150)
    email: Optional[str] = Field(None, max_length=320)

    @validator("age", "email", pre=True)
    def empty_to_none(cls, v):
        """Blank optional columns become None"""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @validator("name")
    def clean_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("name cannot be empty after stripping")
        return v


class SkippedItem(BaseModel):
    """
    A record that failed mapping or processing, paired with the reason.

    Built by the chunk loop and handed to the execution tracker, which
    appends it to the skip log.
    """

    step_name: str
    offset: int
    error_type: str
    reason: str
    raw_content: Optional[str] = None
    item: Optional[Dict[str, Any]] = None

    class Config:
        frozen = True
