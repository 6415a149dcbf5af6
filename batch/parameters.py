"""
Job parameters - the identity of one job run.

Two runs of the same job with equal parameters are the same execution: the
tracker looks executions up by ``(job_name, identity_hash())``.
"""

import hashlib
import json
import re
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, Optional

from core.exceptions import InvalidJobParametersError

_TYPE_NAMES = {
    bool: "bool",
    int: "int",
    float: "float",
    str: "str",
    datetime: "datetime",
    date: "date",
}

_EXPRESSION = re.compile(r"^\s*(?P<name>[^=()\s]+)\s*(?:\((?P<type>\w+)\))?\s*=(?P<value>.*)$")


def _type_name(value: Any) -> str:
    # bool before int, datetime before date
    for python_type, name in _TYPE_NAMES.items():
        if isinstance(value, python_type):
            return name
    raise InvalidJobParametersError(
        f"Unsupported parameter type {type(value).__name__}",
        context={"value": repr(value)}
    )


def _encode(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _decode(type_name: str, raw: Any) -> Any:
    if type_name == "str":
        return str(raw)
    if type_name == "int":
        return int(raw)
    if type_name == "float":
        return float(raw)
    if type_name == "bool":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in ("true", "1", "yes", "y"):
            return True
        if text in ("false", "0", "no", "n"):
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if type_name == "date":
        return date.fromisoformat(str(raw))
    if type_name == "datetime":
        return datetime.fromisoformat(str(raw))
    raise ValueError(f"unknown parameter type {type_name!r}")


class JobParameters(Mapping):
    """
    Immutable mapping of parameter name to typed value.

    Supported value types: str, int, float, bool, date, datetime.

    Example:
        >>> params = JobParameters({"input.file": "customers.csv", "run.id": 7})
        >>> params["run.id"]
        7
        >>> params == JobParameters({"run.id": 7, "input.file": "customers.csv"})
        True
    """

    def __init__(self, values: Optional[Mapping] = None):
        checked: Dict[str, Any] = {}
        for name, value in (values or {}).items():
            if not isinstance(name, str) or not name:
                raise InvalidJobParametersError(
                    "Parameter names must be non-empty strings",
                    context={"parameter": repr(name)}
                )
            _type_name(value)
            checked[name] = value
        self._values = dict(sorted(checked.items()))

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __hash__(self) -> int:
        return hash(self.identity_hash())

    def __eq__(self, other) -> bool:
        if isinstance(other, JobParameters):
            return self.to_dict() == other.to_dict()
        return NotImplemented

    def __repr__(self) -> str:
        return f"JobParameters({self._values!r})"

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Type-tagged, JSON-serializable form stored with the execution"""
        return {
            name: {"type": _type_name(value), "value": _encode(value)}
            for name, value in self._values.items()
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "JobParameters":
        """Rebuild from ``to_dict()`` output"""
        values = {}
        for name, entry in data.items():
            try:
                values[name] = _decode(entry["type"], entry["value"])
            except (KeyError, TypeError, ValueError) as e:
                raise InvalidJobParametersError(
                    "Malformed stored parameter",
                    context={"parameter": name, "value": repr(entry)},
                    original_exception=e
                )
        return cls(values)

    def identity_hash(self) -> str:
        """SHA-256 of the canonical encoding; independent of insertion order"""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def parse(cls, expressions: Iterable[str]) -> "JobParameters":
        """
        Parse ``name(type)=value`` expressions.

        The type defaults to ``str``.

        Example:
            >>> JobParameters.parse(["run.date(date)=2024-01-15", "mode=full"])
            JobParameters({'mode': 'full', 'run.date': datetime.date(2024, 1, 15)})
        """
        values = {}
        for expression in expressions:
            match = _EXPRESSION.match(expression)
            if not match:
                raise InvalidJobParametersError(
                    "Expected name(type)=value",
                    context={"value": expression}
                )
            name = match.group("name")
            type_name = match.group("type") or "str"
            raw = match.group("value")
            if type_name != "str":
                raw = raw.strip()
            try:
                values[name] = _decode(type_name, raw)
            except ValueError as e:
                raise InvalidJobParametersError(
                    f"Cannot convert parameter to {type_name}",
                    context={"parameter": name, "value": raw},
                    original_exception=e
                )
        return cls(values)
