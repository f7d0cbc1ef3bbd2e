"""Query building and execution across daily partitions.

Filters are a plain mapping of document key to value; the value's type picks
the query clause:

- ``str``                       -> ``match`` (full text)
- :class:`RangeFilter` or a ``(low, high)`` tuple -> ``range``
- list / set of ``str``         -> ``terms`` (exact membership)
- ``bool`` / ``int`` / ``float`` -> ``term``
- key ``_id``                   -> ``ids``

A 2-tuple is always a range, even of strings such as ISO dates; pass a list
for exact membership of two strings.

Anything else raises :class:`UnsupportedFilterError` before the engine is
contacted.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence, Set
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any

from partitioned_search.config import Settings
from partitioned_search.engine import SearchEngine
from partitioned_search.errors import EngineError, QueryError, UnsupportedFilterError
from partitioned_search.partitions import partition_pattern, partition_targets_between
from partitioned_search.schema import RecordSchema, TextField
from partitioned_search.serialization import deserialize_record
from partitioned_search.templates import TemplateManager


logger = logging.getLogger(__name__)

ID_FILTER = "_id"


@dataclass(frozen=True)
class RangeFilter:
    """Bounded range on one field. ``None`` leaves that side open."""

    gte: Any = None
    lte: Any = None
    gt: Any = None
    lt: Any = None

    def bounds(self) -> dict[str, Any]:
        return {
            key: _range_value(value)
            for key, value in (("gte", self.gte), ("lte", self.lte), ("gt", self.gt), ("lt", self.lt))
            if value is not None
        }


@dataclass(frozen=True)
class SearchHit:
    """One normalized search result."""

    id: str
    index: str
    source: dict[str, Any]
    score: float | None = None

    @classmethod
    def from_hit(cls, hit: Mapping[str, Any]) -> SearchHit:
        return cls(
            id=str(hit.get("_id", "")),
            index=str(hit.get("_index", "")),
            source=dict(hit.get("_source") or {}),
            score=hit.get("_score"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the stored document with ``_index`` and ``_id`` added."""
        return {**self.source, "_index": self.index, "_id": self.id}

    def to_record(self, schema: RecordSchema) -> Any:
        """Rebuild the record this document was written from."""
        return deserialize_record(self.source, schema)


def _range_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def _is_string_collection(value: Any) -> bool:
    if isinstance(value, (str, bytes)) or not isinstance(value, (Sequence, Set)):
        return False
    return all(isinstance(item, str) for item in value)


def _exact_name(field: str, schema: RecordSchema | None) -> str:
    if schema is None:
        return field
    schema_field = schema.by_index_name(field)
    if isinstance(schema_field, TextField) and schema_field.exact_name:
        return schema_field.exact_name
    return field


def build_filter_clause(field: str, value: Any, schema: RecordSchema | None = None) -> dict[str, Any]:
    """Translate one filter into a query clause."""
    if field == ID_FILTER:
        if isinstance(value, str):
            return {"ids": {"values": [value]}}
        if _is_string_collection(value):
            return {"ids": {"values": list(value)}}
        msg = f"Filter on {ID_FILTER} needs a string or a sequence of strings, got {type(value).__name__}"
        raise UnsupportedFilterError(msg, field=field)

    if isinstance(value, RangeFilter):
        bounds = value.bounds()
        if not bounds:
            msg = f"Range filter on {field!r} has no bounds"
            raise UnsupportedFilterError(msg, field=field)
        return {"range": {field: bounds}}
    if isinstance(value, str):
        return {"match": {field: value}}
    if isinstance(value, (bool, int, float)):
        return {"term": {field: value}}
    if isinstance(value, tuple) and len(value) == 2:
        return build_filter_clause(field, RangeFilter(gte=value[0], lte=value[1]), schema)
    if _is_string_collection(value):
        return {"terms": {_exact_name(field, schema): sorted(value) if isinstance(value, Set) else list(value)}}

    msg = f"Unsupported filter value for {field!r}: {type(value).__name__}"
    raise UnsupportedFilterError(msg, field=field)


def build_query(
    filters: Mapping[str, Any],
    *,
    schema: RecordSchema | None = None,
    sort_field: str | None = None,
) -> dict[str, Any]:
    """Return a search body combining every filter with boolean AND."""
    clauses = [build_filter_clause(field, value, schema) for field, value in filters.items()]
    body: dict[str, Any] = {"query": {"bool": {"must": clauses}} if clauses else {"match_all": {}}}
    if sort_field:
        body["sort"] = [{_exact_name(sort_field, schema): {"order": "desc"}}]
    return body


class QueryEngine:
    """Run filtered searches over all partitions or a date range of them."""

    def __init__(self, engine: SearchEngine, templates: TemplateManager, settings: Settings) -> None:
        self._engine = engine
        self._templates = templates
        self._settings = settings

    def search(
        self,
        dataset: str,
        filters: Mapping[str, Any] | None = None,
        sort_field: str | None = None,
    ) -> list[SearchHit]:
        """Search every partition of ``dataset``."""
        return self._execute(dataset, [partition_pattern(dataset)], filters or {}, sort_field)

    def search_range(
        self,
        dataset: str,
        start: datetime | date,
        end: datetime | date,
        filters: Mapping[str, Any] | None = None,
        sort_field: str | None = None,
    ) -> list[SearchHit]:
        """Search only the partitions of the UTC days in ``[start, end]``."""
        indices = partition_targets_between(dataset, start, end)
        if not indices:
            return []
        return self._execute(dataset, list(indices), filters or {}, sort_field)

    def _execute(
        self,
        dataset: str,
        indices: list[str],
        filters: Mapping[str, Any],
        sort_field: str | None,
    ) -> list[SearchHit]:
        try:
            schema = self._templates.resolve(dataset)
        except EngineError as exc:
            msg = f"Reading the template of {dataset!r} failed: {exc.reason}"
            raise QueryError(msg, indices=indices) from exc
        body = build_query(filters, schema=schema, sort_field=sort_field)
        size = self._settings.max_page_size

        try:
            response = self._engine.search(indices, body, size=size)
        except EngineError as exc:
            if not (sort_field and exc.is_unknown_sort_field):
                raise QueryError(f"Search on {dataset!r} failed: {exc.reason}", indices=indices) from exc
            logger.warning("Sort field not mapped, retrying without sort", extra={"sort_field": sort_field})
            try:
                response = self._engine.search(indices, build_query(filters, schema=schema), size=size)
            except EngineError as retry_exc:
                msg = f"Search on {dataset!r} failed: {retry_exc.reason}"
                raise QueryError(msg, indices=indices) from retry_exc

        hits = (response.get("hits") or {}).get("hits") or []
        return [SearchHit.from_hit(hit) for hit in hits]
