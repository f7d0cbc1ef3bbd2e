"""
Time-partitioned document indexing and query layer for OpenSearch.

- partitions: daily partition naming and date-range expansion
- schema: record schemas and mapping inference
- templates: lazily created per-dataset index templates
- ingest: single and bulk ingestion
- query: filters, date-range search, normalized hits
- search_index: the public ``SearchIndex`` facade
"""

from partitioned_search.config import Settings
from partitioned_search.errors import (
    AggregateError,
    BatchCancelledError,
    IndexWriteError,
    QueryError,
    RefreshError,
    SchemaInferenceError,
    SchemaMismatchError,
    SearchConnectionError,
    SearchIndexError,
    SerializationError,
    TemplateCreationError,
    UnsupportedFilterError,
)
from partitioned_search.ingest import BulkIndexResult
from partitioned_search.partitions import partition_name, partition_names_between
from partitioned_search.query import RangeFilter, SearchHit
from partitioned_search.schema import RecordSchema, infer_schema
from partitioned_search.search_index import SearchIndex


__all__ = [
    "AggregateError",
    "BatchCancelledError",
    "BulkIndexResult",
    "IndexWriteError",
    "QueryError",
    "RangeFilter",
    "RecordSchema",
    "RefreshError",
    "SchemaInferenceError",
    "SchemaMismatchError",
    "SearchConnectionError",
    "SearchHit",
    "SearchIndex",
    "SearchIndexError",
    "SerializationError",
    "Settings",
    "TemplateCreationError",
    "UnsupportedFilterError",
    "infer_schema",
    "partition_name",
    "partition_names_between",
]
