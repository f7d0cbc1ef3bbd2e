"""Record <-> engine document conversion driven by a :class:`RecordSchema`."""

from __future__ import annotations

from dataclasses import fields as dataclass_fields, is_dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import orjson
from pydantic import BaseModel, ValidationError

from partitioned_search.errors import SerializationError
from partitioned_search.schema import DateField, KeywordField, RecordSchema, TextField


_DUMP_OPTIONS = orjson.OPT_NAIVE_UTC | orjson.OPT_NON_STR_KEYS

# Stored text starting with one of these is JSON and is decoded on read
_JSON_TEXT_PREFIXES = ("{", "[", '"')


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset)):
        try:
            return sorted(value)
        except TypeError:
            return list(value)
    if isinstance(value, tuple) and hasattr(value, "_asdict"):
        return value._asdict()
    msg = f"Type is not JSON serializable: {type(value).__name__}"
    raise TypeError(msg)


def _encode_loose(value: Any) -> Any:
    """Return the stored form of a value in a field without a precise mapping.

    Objects and arrays become JSON text. Scalars keep their plain JSON form,
    except strings that would read back as JSON text, which are quoted.
    """
    text = orjson.dumps(value, default=_json_default, option=_DUMP_OPTIONS).decode("utf-8")
    if text.startswith(("{", "[")):
        return text
    plain = orjson.loads(text)
    if isinstance(plain, str) and plain.startswith(_JSON_TEXT_PREFIXES):
        return text
    return plain


def build_document(record: Any, schema: RecordSchema) -> dict[str, Any]:
    """Return the document for ``record`` keyed by each field's index name."""
    document: dict[str, Any] = {}
    for schema_field in schema:
        value = getattr(record, schema_field.name)
        if isinstance(schema_field, TextField) and schema_field.json_encoded:
            if value is not None:
                value = _encode_loose(value)
        elif isinstance(schema_field, KeywordField) and isinstance(value, (set, frozenset)):
            value = sorted(value)
        document[schema_field.index_name] = value
    return document


def serialize_record(
    record: Any,
    schema: RecordSchema,
    *,
    position: int | None = None,
    document_id: str | None = None,
) -> bytes:
    """Serialize ``record`` to JSON bytes.

    Raises:
        SerializationError: the record is missing a schema attribute, holds a
            value with no JSON form, or nests itself.
    """
    try:
        document = build_document(record, schema)
        return orjson.dumps(document, default=_json_default, option=_DUMP_OPTIONS)
    except (AttributeError, TypeError, ValueError, RecursionError) as exc:
        label = f"record {document_id!r}" if document_id is not None else "record"
        if position is not None:
            label = f"{label} at position {position}"
        msg = f"Failed to serialize {label}: {exc}"
        raise SerializationError(msg, position=position, document_id=document_id) from exc


def record_timestamp(record: Any, schema: RecordSchema, now: datetime | None = None) -> datetime | date:
    """Return the value that decides the record's partition.

    Falls back to ``now`` (default: the current UTC time) when the schema has
    no timestamp field or the record leaves it empty.
    """
    if schema.timestamp_field is not None:
        value = getattr(record, schema.timestamp_field, None)
        if isinstance(value, (datetime, date)):
            return value
    return now or datetime.now(timezone.utc)


def _decode_value(schema_field: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(schema_field, DateField) and isinstance(value, str):
        if schema_field.date_only:
            return date.fromisoformat(value[:10])
        return datetime.fromisoformat(value)
    if (
        isinstance(schema_field, TextField)
        and schema_field.json_encoded
        and isinstance(value, str)
        and value.startswith(_JSON_TEXT_PREFIXES)
    ):
        try:
            return orjson.loads(value)
        except orjson.JSONDecodeError:
            return value
    return value


def deserialize_record(source: dict[str, Any], schema: RecordSchema) -> Any:
    """Rebuild a record from a stored document.

    Returns a plain dict keyed by attribute name when the schema was supplied
    as a manifest and carries no ``record_type``.
    """
    values = {
        f.name: _decode_value(f, source[f.index_name]) for f in schema if f.index_name in source
    }
    record_type = schema.record_type
    if record_type is None:
        return values

    try:
        if is_dataclass(record_type):
            init_names = {f.name for f in dataclass_fields(record_type) if f.init}
            return record_type(**{k: v for k, v in values.items() if k in init_names})
        if issubclass(record_type, BaseModel):
            payload = {}
            for name, value in values.items():
                info = record_type.model_fields[name]
                key = info.validation_alias if isinstance(info.validation_alias, str) else info.alias
                payload[key or name] = value
            return record_type.model_validate(payload)
        return record_type(**values)
    except (TypeError, ValueError, ValidationError) as exc:
        msg = f"Failed to rebuild {record_type.__qualname__} from document: {exc}"
        raise SerializationError(msg) from exc
