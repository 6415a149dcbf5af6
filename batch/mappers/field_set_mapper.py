"""
Map raw records onto typed domain records with Pydantic validation
"""

from typing import Generic, List, Optional, Sequence, Type, TypeVar
from pydantic import BaseModel, ValidationError
from schemas.records import RawRecord
from core.exceptions import MappingError

T = TypeVar("T", bound=BaseModel)


class FieldSetMapper(Generic[T]):
    """
    Convert a RawRecord into a Pydantic model instance.

    Handles:
    - Pairing positional fields with field names
    - Type coercion (string to number, blank to None) via the model
    - Field-level errors reported as MappingError with the record offset

    Field names default to the model's field declaration order.
    """

    def __init__(self, model: Type[T], field_names: Optional[Sequence[str]] = None):
        self.model = model
        self.field_names: List[str] = list(field_names or model.model_fields.keys())

    def map(self, record: RawRecord) -> T:
        if len(record.fields) != len(self.field_names):
            raise MappingError(
                f"Expected {len(self.field_names)} fields, found {len(record.fields)}",
                offset=record.offset,
                raw_content=record.raw_content
            )

        values = dict(zip(self.field_names, record.fields))

        try:
            return self.model(**values)
        except ValidationError as e:
            field_errors = {
                ".".join(str(part) for part in error["loc"]) or "__root__": error["msg"]
                for error in e.errors()
            }
            reason = "; ".join(f"{field}: {msg}" for field, msg in field_errors.items())
            raise MappingError(
                reason,
                offset=record.offset,
                raw_content=record.raw_content,
                context={"field_errors": field_errors}
            )
