"""Lazily created index templates, one per dataset.

The manager keeps a per-instance cache of datasets whose template is known to
exist. The lock only guards the cache; the engine call happens outside it, so
two threads racing on a brand new dataset may both submit the template. Only
one submission is stored: templates are created with ``create=true`` and the
loser re-reads the stored template so every caller ends up with the schema the
engine actually holds.

The template's ``_meta`` carries the full schema manifest. An instance that
never wrote to a dataset (another process, a read-only query service) reads it
back through :meth:`TemplateManager.resolve` and builds the same queries as
the writer.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
import threading
from typing import Any

from partitioned_search.config import Settings
from partitioned_search.engine import SearchEngine
from partitioned_search.errors import EngineError, TemplateCreationError
from partitioned_search.observability.metrics import TEMPLATE_CACHE
from partitioned_search.partitions import partition_pattern, template_name
from partitioned_search.schema import RecordSchema, infer_schema


logger = logging.getLogger(__name__)


def build_template_body(dataset: str, schema: RecordSchema, partition_settings: dict[str, Any]) -> dict[str, Any]:
    """Return the composable template binding ``{dataset}-*`` to ``schema``."""
    return {
        "index_patterns": [partition_pattern(dataset)],
        "template": {
            "settings": dict(partition_settings),
            "mappings": schema.to_mapping(),
        },
        "_meta": {"dataset": dataset, "record": schema.name, "schema": schema.to_dict()},
    }


def schema_from_template(body: Mapping[str, Any]) -> RecordSchema | None:
    """Rebuild the schema stored in a template's ``_meta``.

    Returns None for templates this package did not write. The result has no
    ``record_type``.
    """
    manifest = (body.get("_meta") or {}).get("schema")
    if not isinstance(manifest, Mapping):
        return None
    try:
        return RecordSchema.from_dict(dict(manifest))
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Ignoring unreadable schema in index template: %s", exc)
        return None


class TemplateManager:
    """Ensure each dataset's template exists, at most one success per dataset."""

    def __init__(self, engine: SearchEngine, settings: Settings) -> None:
        self._engine = engine
        self._settings = settings
        self._lock = threading.Lock()
        self._schemas: dict[str, RecordSchema] = {}
        # Schemas read back for querying only; never used to write
        self._stored: dict[str, RecordSchema] = {}

    def schema_for(self, dataset: str) -> RecordSchema | None:
        with self._lock:
            return self._schemas.get(dataset)

    def is_ready(self, dataset: str) -> bool:
        return self.schema_for(dataset) is not None

    def resolve(self, dataset: str) -> RecordSchema | None:
        """Return the dataset's schema, reading the stored template on a cache miss.

        Returns None when the dataset has no template yet (nothing was ever
        written to it).

        Raises:
            EngineError: the template could not be read.
        """
        with self._lock:
            cached = self._schemas.get(dataset)
            if cached is None:
                cached = self._stored.get(dataset)
        if cached is not None:
            TEMPLATE_CACHE.labels(result="hit").inc()
            return cached

        TEMPLATE_CACHE.labels(result="miss").inc()
        stored = self._fetch(dataset)
        if stored is None:
            return None
        with self._lock:
            return self._stored.setdefault(dataset, stored)

    def ensure(self, dataset: str, sample: Any = None, schema: RecordSchema | None = None) -> RecordSchema:
        """Make sure ``dataset`` has a template and return its schema.

        Args:
            dataset: Logical dataset name.
            sample: Record whose class the mapping is inferred from. Ignored
                when ``schema`` is given or the dataset is already cached.
            schema: Explicit field manifest to use instead of inference.

        When the engine already holds a template with a different schema, the
        stored schema wins and is returned.

        Raises:
            SchemaInferenceError: ``sample`` is not record-like.
            TemplateCreationError: The engine refused the template. Nothing is
                cached, so the next call tries again.
        """
        with self._lock:
            cached = self._schemas.get(dataset)
        if cached is not None:
            TEMPLATE_CACHE.labels(result="hit").inc()
            return cached

        TEMPLATE_CACHE.labels(result="miss").inc()
        resolved = schema if schema is not None else infer_schema(sample)
        name = template_name(dataset)
        body = build_template_body(dataset, resolved, self._settings.partition_settings())

        try:
            self._engine.put_index_template(name, body, create=True)
        except EngineError as exc:
            if not exc.is_already_exists:
                msg = f"Failed to create index template {name!r}: {exc.reason}"
                raise TemplateCreationError(msg, dataset=dataset, template=name) from exc
            logger.debug("Index template %s already exists", name)
            resolved = self._reconcile(dataset, name, resolved)
        else:
            logger.info("Index template created", extra={"template": name, "record": resolved.name})

        with self._lock:
            # First caller to get here wins; every racer holds the stored shape
            return self._schemas.setdefault(dataset, resolved)

    def _fetch(self, dataset: str) -> RecordSchema | None:
        body = self._engine.get_index_template(template_name(dataset))
        if body is None:
            return None
        return schema_from_template(body)

    def _reconcile(self, dataset: str, name: str, resolved: RecordSchema) -> RecordSchema:
        try:
            stored = self._fetch(dataset)
        except EngineError as exc:
            msg = f"Failed to read existing index template {name!r}: {exc.reason}"
            raise TemplateCreationError(msg, dataset=dataset, template=name) from exc
        if stored is None or stored.to_dict() == resolved.to_dict():
            return resolved
        logger.warning(
            "Index template %s holds a different schema; using the stored one",
            name,
            extra={"stored": stored.name, "requested": resolved.name},
        )
        return stored
