"""
Record schemas and mapping inference.

A :class:`RecordSchema` is the explicit field manifest for one dataset. It is
either inferred once from a record class (dataclass, pydantic model or
``NamedTuple``) or supplied by the caller, then cached by the template
manager. The schema decides:

- the engine mapping sent inside the index template
- the document key each attribute is written under
- which field stamps the partition a record lands in

Inference reads type hints, never runtime values, so every record of the
same class produces the same mapping.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import collections.abc
from dataclasses import dataclass, field, fields as dataclass_fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
import types
import typing
from typing import Any

from pydantic import BaseModel

from partitioned_search.errors import SchemaInferenceError


class FieldType(str, Enum):
    """Engine field types produced by inference."""

    BOOLEAN = "boolean"
    LONG = "long"
    DOUBLE = "double"
    DATE = "date"
    TEXT = "text"
    KEYWORD = "keyword"


@dataclass(frozen=True)
class SchemaField(ABC):
    """Base class for all schema fields.

    ``name`` is the attribute on the record, ``index_name`` the key used in
    the stored document. ``index_name`` defaults to the lower-cased attribute.
    """

    name: str
    index_name: str = ""

    def __post_init__(self) -> None:
        if not self.index_name:
            object.__setattr__(self, "index_name", self.name.lower())

    @property
    @abstractmethod
    def field_type(self) -> FieldType:
        """Return the field type."""

    def to_mapping(self) -> dict[str, Any]:
        """Return the engine mapping for this field."""
        return {"type": self.field_type.value}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "index_name": self.index_name,
            "type": self.field_type.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaField:
        field_type = FieldType(data["type"])
        common = {"name": data["name"], "index_name": data.get("index_name", "")}

        if field_type == FieldType.BOOLEAN:
            return BooleanField(**common)
        if field_type == FieldType.LONG:
            return LongField(**common)
        if field_type == FieldType.DOUBLE:
            return DoubleField(**common)
        if field_type == FieldType.DATE:
            return DateField(**common, date_only=data.get("date_only", False))
        if field_type == FieldType.TEXT:
            return TextField(
                **common,
                exact_subfield=data.get("exact_subfield", True),
                json_encoded=data.get("json_encoded", False),
            )
        if field_type == FieldType.KEYWORD:
            return KeywordField(**common)
        msg = f"Unknown field type: {field_type}"
        raise ValueError(msg)


@dataclass(frozen=True)
class BooleanField(SchemaField):
    @property
    def field_type(self) -> FieldType:
        return FieldType.BOOLEAN


@dataclass(frozen=True)
class LongField(SchemaField):
    """64-bit integer field. All Python ints map here."""

    @property
    def field_type(self) -> FieldType:
        return FieldType.LONG


@dataclass(frozen=True)
class DoubleField(SchemaField):
    @property
    def field_type(self) -> FieldType:
        return FieldType.DOUBLE


@dataclass(frozen=True)
class DateField(SchemaField):
    """
    Date or timestamp field.

    Args:
        date_only: True when the attribute is a ``date`` rather than a ``datetime``;
            used to rebuild the right type when reading hits back.
    """

    date_only: bool = False

    @property
    def field_type(self) -> FieldType:
        return FieldType.DATE

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["date_only"] = self.date_only
        return data


@dataclass(frozen=True)
class TextField(SchemaField):
    """
    Analyzed text field.

    Plain strings get an exact-match ``keyword`` sub-field so they support both
    full-text ``match`` and exact ``term``/``terms`` queries. Composite values
    that have no better mapping are stored as their JSON text
    (``json_encoded``) and get no sub-field.

    Args:
        exact_subfield: Add the ``<index_name>.keyword`` sub-field.
        json_encoded: Values are written as JSON strings.
    """

    exact_subfield: bool = True
    json_encoded: bool = False

    @property
    def field_type(self) -> FieldType:
        return FieldType.TEXT

    @property
    def exact_name(self) -> str | None:
        return f"{self.index_name}.keyword" if self.exact_subfield else None

    def to_mapping(self) -> dict[str, Any]:
        mapping = super().to_mapping()
        if self.exact_subfield:
            mapping["fields"] = {"keyword": {"type": "keyword", "ignore_above": 256}}
        return mapping

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["exact_subfield"] = self.exact_subfield
        data["json_encoded"] = self.json_encoded
        return data


@dataclass(frozen=True)
class KeywordField(SchemaField):
    """Exact-match field, used for collections of strings (tags, certifiers)."""

    @property
    def field_type(self) -> FieldType:
        return FieldType.KEYWORD


@dataclass
class RecordSchema:
    """
    Field manifest for one dataset.

    Example:
        schema = RecordSchema(
            name="Treatment",
            fields=[
                TextField("name"),
                DoubleField("price"),
                BooleanField("certified"),
                KeywordField("certified_by"),
                DateField("created_at"),
            ],
            timestamp_field="created_at",
        )
    """

    fields: list[SchemaField]
    name: str = "record"
    timestamp_field: str | None = None
    record_type: type | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        self._field_map: dict[str, SchemaField] = {f.name: f for f in self.fields}
        self._index_map: dict[str, SchemaField] = {}
        for schema_field in self.fields:
            if schema_field.index_name in self._index_map:
                msg = f"Duplicate document key '{schema_field.index_name}' in schema '{self.name}'"
                raise ValueError(msg)
            self._index_map[schema_field.index_name] = schema_field

        if self.timestamp_field is not None:
            stamp = self._field_map.get(self.timestamp_field)
            if stamp is None:
                msg = f"Timestamp field '{self.timestamp_field}' not found in schema"
                raise ValueError(msg)
            if not isinstance(stamp, DateField):
                msg = f"Timestamp field '{self.timestamp_field}' must be a date field"
                raise ValueError(msg)

    def __getitem__(self, name: str) -> SchemaField:
        return self._field_map[name]

    def __contains__(self, name: str) -> bool:
        return name in self._field_map

    def __iter__(self):
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def by_index_name(self, index_name: str) -> SchemaField | None:
        """Look a field up by its document key."""
        return self._index_map.get(index_name)

    def accepts(self, record: Any) -> bool:
        """Return True when ``record`` has the shape this schema was built for."""
        if self.record_type is None:
            return all(hasattr(record, f.name) for f in self.fields)
        return isinstance(record, self.record_type)

    def to_mapping(self) -> dict[str, Any]:
        """Render the ``mappings`` section of an index template."""
        return {"properties": {f.index_name: f.to_mapping() for f in self.fields}}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "timestamp_field": self.timestamp_field,
            "fields": [f.to_dict() for f in self.fields],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecordSchema:
        return cls(
            fields=[SchemaField.from_dict(f) for f in data["fields"]],
            name=data.get("name", "record"),
            timestamp_field=data.get("timestamp_field"),
        )


# --- inference ----------------------------------------------------------

_STRING_COLLECTIONS = (
    list,
    tuple,
    set,
    frozenset,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Set,
    collections.abc.MutableSet,
    collections.abc.Collection,
    collections.abc.Iterable,
)


def infer_schema(record: Any) -> RecordSchema:
    """Derive a :class:`RecordSchema` from a record instance or record class.

    Raises:
        SchemaInferenceError: ``record`` is not a dataclass, pydantic model or
            ``NamedTuple`` (primitives and open-ended mappings have no stable
            field set), or its type hints cannot be resolved.
    """
    record_type = record if isinstance(record, type) else type(record)
    attributes = _declared_attributes(record_type)

    schema_fields: list[SchemaField] = []
    timestamp_field: str | None = None
    for attribute, alias, hint in attributes:
        schema_field = _field_for(attribute, alias or "", hint)
        if timestamp_field is None and isinstance(schema_field, DateField):
            timestamp_field = attribute
        schema_fields.append(schema_field)

    if not schema_fields:
        msg = f"{record_type.__qualname__} declares no fields"
        raise SchemaInferenceError(msg)

    try:
        return RecordSchema(
            fields=schema_fields,
            name=record_type.__name__,
            timestamp_field=timestamp_field,
            record_type=record_type,
        )
    except ValueError as exc:
        raise SchemaInferenceError(str(exc)) from exc


def _declared_attributes(record_type: type) -> list[tuple[str, str | None, Any]]:
    """Return ``(attribute, alias, type hint)`` for every declared field."""
    if issubclass(record_type, BaseModel):
        # pydantic has already resolved the annotations
        return [
            (name, info.serialization_alias or info.alias, info.annotation)
            for name, info in record_type.model_fields.items()
        ]
    if is_dataclass(record_type):
        hints = _type_hints(record_type)
        return [(f.name, f.metadata.get("alias"), hints.get(f.name, Any)) for f in dataclass_fields(record_type)]
    if issubclass(record_type, tuple) and hasattr(record_type, "_fields"):
        hints = _type_hints(record_type)
        return [(name, None, hints.get(name, Any)) for name in record_type._fields]
    msg = (
        f"Cannot infer a mapping from {record_type.__qualname__}: "
        "records must be dataclasses, pydantic models or NamedTuples"
    )
    raise SchemaInferenceError(msg)


def _type_hints(record_type: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(record_type, include_extras=True)
    except (NameError, TypeError) as exc:
        msg = f"Cannot resolve type hints of {record_type.__qualname__}: {exc}"
        raise SchemaInferenceError(msg) from exc


def _unwrap(hint: Any) -> Any:
    origin = typing.get_origin(hint)
    if origin is typing.Annotated:
        return _unwrap(typing.get_args(hint)[0])
    if origin in (typing.Union, types.UnionType):
        members = [arg for arg in typing.get_args(hint) if arg is not type(None)]
        if len(members) == 1:
            return _unwrap(members[0])
    return hint


def _is_string_collection(hint: Any) -> bool:
    origin = typing.get_origin(hint)
    if origin not in _STRING_COLLECTIONS:
        return False
    args = typing.get_args(hint)
    if origin is tuple and len(args) == 2 and args[1] is Ellipsis:
        args = args[:1]
    return bool(args) and all(_unwrap(arg) is str for arg in args)


def _field_for(attribute: str, alias: str, hint: Any) -> SchemaField:
    hint = _unwrap(hint)
    if isinstance(hint, type):
        # bool before int: bool is an int subclass
        if issubclass(hint, bool):
            return BooleanField(attribute, alias)
        if issubclass(hint, int):
            return LongField(attribute, alias)
        if issubclass(hint, (float, Decimal)):
            return DoubleField(attribute, alias)
        if issubclass(hint, datetime):
            return DateField(attribute, alias)
        if issubclass(hint, date):
            return DateField(attribute, alias, date_only=True)
        if issubclass(hint, str):
            return TextField(attribute, alias)
    if _is_string_collection(hint):
        return KeywordField(attribute, alias)
    return TextField(attribute, alias, exact_subfield=False, json_encoded=True)
