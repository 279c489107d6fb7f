"""
Typed config values.

Stored rows keep the value as text plus a type tag. Conversion happens
only here: `wrap` picks the variant for a Python value, `serialize` /
`deserialize` cross the storage boundary.
"""
from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Any, Tuple, Union

STRING = "string"
NUMBER = "number"
BOOLEAN = "boolean"
JSON = "json"

TYPES = (STRING, NUMBER, BOOLEAN, JSON)


@dataclass(frozen=True)
class Str:
    value: str
    type = STRING


@dataclass(frozen=True)
class Num:
    value: float
    type = NUMBER


@dataclass(frozen=True)
class Bool:
    value: bool
    type = BOOLEAN


@dataclass(frozen=True)
class Json:
    value: Any
    type = JSON


ConfigValue = Union[Str, Num, Bool, Json]


def wrap(value: Any) -> ConfigValue:
    # bool before number: bool is an int subclass
    if isinstance(value, (Str, Num, Bool, Json)):
        return value
    if isinstance(value, bool):
        return Bool(value)
    if isinstance(value, (int, float)):
        return Num(float(value))
    if isinstance(value, str):
        return Str(value)
    if isinstance(value, (dict, list, tuple)) or value is None:
        return Json(value)
    raise TypeError(f"unsupported config value type: {type(value).__name__}")


def serialize(cv: ConfigValue) -> Tuple[str, str]:
    """-> (type tag, text)"""
    if isinstance(cv, Bool):
        return BOOLEAN, "true" if cv.value else "false"
    if isinstance(cv, Num):
        v = cv.value
        return NUMBER, str(int(v)) if float(v).is_integer() else repr(v)
    if isinstance(cv, Json):
        return JSON, json.dumps(cv.value, separators=(",", ":"))
    return STRING, cv.value


def deserialize(type_: str, text: str | None) -> ConfigValue:
    """Raises ValueError for text that does not parse as its tag."""
    if type_ == BOOLEAN:
        if text not in ("true", "false"):
            raise ValueError(f"not a boolean: {text!r}")
        return Bool(text == "true")
    if type_ == NUMBER:
        return Num(float(text))
    if type_ == JSON:
        return Json(json.loads(text) if text is not None else None)
    if type_ == STRING:
        return Str(text if text is not None else "")
    raise ValueError(f"unknown config type: {type_!r}")


def unwrap(cv: ConfigValue) -> Any:
    if isinstance(cv, Num) and cv.value.is_integer():
        return int(cv.value)
    return cv.value
