"""Public facade of the partitioned search layer."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import date, datetime
import logging
import threading
from typing import Any

from partitioned_search.config import Settings
from partitioned_search.engine import OpenSearchEngine, SearchEngine
from partitioned_search.errors import EngineError, SearchConnectionError
from partitioned_search.ingest import BulkIndexResult, IngestionPipeline
from partitioned_search.observability.context import dataset_context
from partitioned_search.partitions import partition_name
from partitioned_search.query import QueryEngine, SearchHit
from partitioned_search.schema import RecordSchema
from partitioned_search.templates import TemplateManager


logger = logging.getLogger(__name__)


class SearchIndex:
    """Time-partitioned indexing and search over one engine cluster.

    Each instance owns its template cache; two instances never share state.

    Example:
        with SearchIndex.connect("https://search.internal:9200", ("app", "secret")) as index:
            index.index_record("treatments", "unique-id-1", treatment)
            hits = index.search("treatments", {"name": "stm-cancer-c8"})
    """

    def __init__(
        self,
        engine: SearchEngine,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._settings = settings or Settings()
        self._templates = TemplateManager(engine, self._settings)
        self._ingest = IngestionPipeline(engine, self._templates, self._settings, clock=clock)
        self._query = QueryEngine(engine, self._templates, self._settings)

    @classmethod
    def connect(
        cls,
        endpoint: str | None = None,
        credentials: Any = None,
        *,
        settings: Settings | None = None,
        engine: SearchEngine | None = None,
    ) -> SearchIndex:
        """Connect to the cluster and confirm it answers.

        Raises:
            SearchConnectionError: the cluster info call failed.
        """
        settings = settings or Settings()
        engine = engine or OpenSearchEngine.from_settings(settings, endpoint=endpoint, credentials=credentials)
        try:
            info = engine.info()
        except EngineError as exc:
            engine.close()
            target = endpoint or settings.opensearch_endpoint
            msg = f"Failed to establish a connection with the search cluster at {target}: {exc.reason}"
            raise SearchConnectionError(msg) from exc

        version = (info.get("version") or {}).get("number", "unknown")
        logger.info("Connection established with search cluster", extra={"version": version})
        return cls(engine, settings)

    @property
    def settings(self) -> Settings:
        return self._settings

    def __enter__(self) -> SearchIndex:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self._engine.close()

    def schema_for(self, dataset: str) -> RecordSchema | None:
        """Return the cached schema of ``dataset`` (None before its first write)."""
        return self._templates.schema_for(dataset)

    def ensure_template(
        self,
        dataset: str,
        sample_record: Any = None,
        schema: RecordSchema | None = None,
    ) -> RecordSchema:
        """Create the dataset's template from ``sample_record`` or an explicit ``schema``."""
        with dataset_context(dataset):
            return self._templates.ensure(dataset, sample_record, schema)

    def ensure_partition(self, dataset: str, at: datetime | date) -> bool:
        """Create the partition of ``dataset`` for the day of ``at``.

        The dataset's template must already be ensured.
        """
        schema = self._templates.schema_for(dataset)
        if schema is None:
            msg = f"Dataset {dataset!r} has no template yet; call ensure_template first"
            raise ValueError(msg)
        with dataset_context(dataset):
            return self._ingest.ensure_partition(partition_name(dataset, at), schema)

    def index_record(self, dataset: str, record_id: str | None, record: Any) -> str:
        with dataset_context(dataset):
            return self._ingest.index_record(dataset, record_id, record)

    def bulk_index(
        self,
        dataset: str,
        records: Sequence[Any],
        *,
        ids: Sequence[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BulkIndexResult:
        with dataset_context(dataset):
            return self._ingest.bulk_index(dataset, records, ids=ids, cancel_event=cancel_event)

    def search(
        self,
        dataset: str,
        filters: Mapping[str, Any] | None = None,
        sort_field: str | None = None,
    ) -> list[SearchHit]:
        with dataset_context(dataset):
            return self._query.search(dataset, filters, sort_field)

    def search_range(
        self,
        dataset: str,
        start: datetime | date,
        end: datetime | date,
        filters: Mapping[str, Any] | None = None,
        sort_field: str | None = None,
    ) -> list[SearchHit]:
        with dataset_context(dataset):
            return self._query.search_range(dataset, start, end, filters, sort_field)
