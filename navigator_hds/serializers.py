"""
Serializers for values persisted by compartments and sessions.

Markers and mirrored collections are written to the key-value store with
jsonpickle, so datetimes and pydantic models survive the round trip.
"""
from typing import Any
from datetime import datetime
from collections.abc import Mapping
import jsonpickle
from jsonpickle.unpickler import loadclass
from datamodel import BaseModel
from pydantic import BaseModel as PydanticBaseModel
from .exceptions import SerializationError


class PydanticHandler(jsonpickle.handlers.BaseHandler):
    """PydanticHandler.
    Stores Pydantic Models as their field values and validates them back.
    """
    def flatten(self, obj, data):
        data['fields'] = self.context.flatten(obj.model_dump(), reset=False)
        return data

    def restore(self, obj):
        mdl = loadclass(obj['py/object'])
        fields = self.context.restore(obj['fields'], reset=False)
        return mdl.model_validate(fields)


jsonpickle.handlers.registry.register(PydanticBaseModel, PydanticHandler, base=True)


def encode(obj: Any) -> str:
    """encode

        Encode an object using jsonpickle.
    Args:
        obj (Any): Object to be encoded using jsonpickle

    Raises:
        SerializationError: Error converting data to json.

    Returns:
        str: json version of the data
    """
    try:
        return jsonpickle.encode(obj, keys=True)
    except Exception as err:
        raise SerializationError(err) from err


def decode(value: str) -> Any:
    """decode.

        Decoding a stored value using jsonpickle.
    Args:
        value (str): json produced by encode().

    Raises:
        SerializationError: Error converting data from json.

    Returns:
        Any: object converted.
    """
    try:
        return jsonpickle.decode(value, keys=True)
    except Exception as err:
        raise SerializationError(err) from err


def as_record(item: Any) -> dict:
    """Normalize a record into a plain dict.

    Accepts mappings, datamodel models and pydantic models. A shallow copy is
    always returned, the caller's object is never mutated.
    """
    if isinstance(item, Mapping):
        return dict(item)
    if isinstance(item, BaseModel):
        return item.to_dict()
    if isinstance(item, PydanticBaseModel):
        return item.model_dump()
    raise TypeError(
        f"Records must be mappings or data models, got {type(item).__name__}"
    )


def is_serializable(value: Any) -> bool:
    """Check if a value can be reliably serialized and restored with jsonpickle.

    Returns True for primitive types, containers of them, pydantic models
    and datetimes.
    """
    if value is None or isinstance(value, (bool, int, float, str, bytes)):
        return True
    if isinstance(value, dict):
        return all(is_serializable(v) for v in value.values())
    if isinstance(value, (list, tuple, set, frozenset)):
        return all(is_serializable(v) for v in value)
    if isinstance(value, PydanticBaseModel):
        return True
    if isinstance(value, (datetime,)):
        return True
    return False
