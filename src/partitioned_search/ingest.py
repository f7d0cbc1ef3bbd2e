"""Single and bulk ingestion into daily partitions.

Single writes are refreshed before returning so callers can read their own
writes. Bulk writes are split into fixed-size batches and every batch is an
independent task: a batch never waits on, cancels or hides the failure of
another. All outcomes are joined and folded into one :class:`AggregateError`.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from typing import Any

import orjson

from partitioned_search.config import Settings
from partitioned_search.engine import SearchEngine, describe_engine_failure
from partitioned_search.errors import (
    AggregateError,
    BatchCancelledError,
    EngineError,
    IndexWriteError,
    RefreshError,
    SchemaMismatchError,
    SearchIndexError,
    SerializationError,
)
from partitioned_search.observability.context import run_in_context
from partitioned_search.observability.metrics import DOCUMENTS_FAILED, DOCUMENTS_INDEXED
from partitioned_search.partitions import partition_name
from partitioned_search.schema import RecordSchema
from partitioned_search.serialization import record_timestamp, serialize_record
from partitioned_search.templates import TemplateManager


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BulkIndexResult:
    """Outcome of a bulk ingestion call."""

    documents_indexed: int
    documents_failed: int
    batches: int
    partitions: tuple[str, ...]


@dataclass
class _BatchOutcome:
    indexed: int = 0
    failed: int = 0
    partitions: set[str] = field(default_factory=set)
    errors: list[SearchIndexError] = field(default_factory=list)


@dataclass(frozen=True)
class _PendingItem:
    position: int
    partition: str
    document_id: str | None


class IngestionPipeline:
    """Write records of a dataset into their daily partitions."""

    def __init__(
        self,
        engine: SearchEngine,
        templates: TemplateManager,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._templates = templates
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # --- single record ----------------------------------------------------

    def index_record(self, dataset: str, record_id: str | None, record: Any) -> str:
        """Index ``record`` under ``record_id`` and return its partition.

        Re-indexing the same id into the same partition overwrites the
        document. ``record_id=None`` lets the engine assign one.

        Raises:
            SchemaInferenceError: record is not record-like (first write only).
            SchemaMismatchError: record does not match the dataset's schema.
            TemplateCreationError: template could not be created; nothing written.
            SerializationError: record has no JSON form; nothing written.
            IndexWriteError: the engine rejected the write. Not retried.
            RefreshError: written, but not yet guaranteed visible.
        """
        schema = self._templates.ensure(dataset, record)
        if not schema.accepts(record):
            raise SchemaMismatchError(_mismatch_message(dataset, schema, record))

        partition = partition_name(dataset, record_timestamp(record, schema, self._clock()))
        body = serialize_record(record, schema, document_id=record_id)

        try:
            if self._settings.precreate_partitions:
                self.ensure_partition(partition, schema)
            self._engine.index_document(partition, body, document_id=record_id)
        except EngineError as exc:
            DOCUMENTS_FAILED.labels(dataset=dataset).inc()
            msg = f"Failed to index record {record_id!r} into {partition}: {exc.reason}"
            raise IndexWriteError(
                msg,
                scope="call",
                partition=partition,
                document_id=record_id,
                status=exc.status,
                reason=exc.reason,
            ) from exc
        DOCUMENTS_INDEXED.labels(dataset=dataset).inc()

        try:
            self._engine.refresh([partition])
        except EngineError as exc:
            msg = f"Record {record_id!r} was written to {partition} but the refresh failed: {exc.reason}"
            raise RefreshError(msg, partitions=[partition]) from exc

        logger.debug("Record indexed and partition refreshed", extra={"record_id": record_id, "index": partition})
        return partition

    def ensure_partition(self, partition: str, schema: RecordSchema) -> bool:
        """Create ``partition`` unless it exists. Returns True when created.

        Only needed for engines that do not create indices on first write;
        the template still applies, the mapping is repeated for engines that
        ignore templates.
        """
        if self._engine.index_exists(partition):
            return False
        body = {"settings": self._settings.partition_settings(), "mappings": schema.to_mapping()}
        try:
            self._engine.create_index(partition, body)
        except EngineError as exc:
            if exc.is_already_exists:
                return False
            raise
        logger.info("Partition created", extra={"index": partition})
        return True

    # --- bulk -------------------------------------------------------------

    def bulk_index(
        self,
        dataset: str,
        records: Sequence[Any],
        *,
        ids: Sequence[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BulkIndexResult:
        """Index ``records`` in parallel batches.

        The first record's class defines the template. Records of another
        class are rejected one by one with :class:`SchemaMismatchError`.

        Args:
            dataset: Logical dataset name.
            records: Records to write; empty input is a no-op.
            ids: Optional document ids aligned with ``records``. Without them
                the engine assigns ids.
            cancel_event: When set, batches that have not started yet are not
                sent and are reported as :class:`BatchCancelledError`.

        Raises:
            SchemaInferenceError: the first record is not record-like.
            TemplateCreationError: template could not be created; nothing written.
            AggregateError: one or more records, batches or the final refresh
                failed. Everything else was written.
        """
        records = list(records)
        if not records:
            return BulkIndexResult(documents_indexed=0, documents_failed=0, batches=0, partitions=())
        if ids is not None and len(ids) != len(records):
            msg = f"Got {len(ids)} ids for {len(records)} records"
            raise ValueError(msg)

        schema = self._templates.ensure(dataset, records[0])
        batch_size = self._settings.bulk_batch_size
        starts = range(0, len(records), batch_size)
        workers = min(self._settings.bulk_max_workers, len(starts))
        now = self._clock()

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"bulk-{dataset}") as pool:
            futures = [
                pool.submit(
                    run_in_context(self._run_batch),
                    dataset,
                    schema,
                    number,
                    start,
                    records[start : start + batch_size],
                    ids[start : start + batch_size] if ids is not None else None,
                    now,
                    cancel_event,
                )
                for number, start in enumerate(starts)
            ]
            outcomes = [future.result() for future in futures]

        errors = [error for outcome in outcomes for error in outcome.errors]
        touched = sorted(set().union(*(outcome.partitions for outcome in outcomes)))
        if touched:
            try:
                self._engine.refresh(touched)
            except EngineError as exc:
                msg = f"Bulk write succeeded but refreshing {len(touched)} partition(s) failed: {exc.reason}"
                refresh_error = RefreshError(msg, partitions=touched)
                refresh_error.__cause__ = exc
                errors.append(refresh_error)

        result = BulkIndexResult(
            documents_indexed=sum(outcome.indexed for outcome in outcomes),
            documents_failed=sum(outcome.failed for outcome in outcomes),
            batches=len(outcomes),
            partitions=tuple(touched),
        )
        logger.info(
            "Bulk indexing finished",
            extra={
                "record_count": len(records),
                "indexed": result.documents_indexed,
                "failed": result.documents_failed,
                "batches": result.batches,
            },
        )
        if errors:
            raise AggregateError(errors, result)
        return result

    def _run_batch(
        self,
        dataset: str,
        schema: RecordSchema,
        number: int,
        offset: int,
        records: list[Any],
        ids: Sequence[str] | None,
        now: datetime,
        cancel_event: threading.Event | None,
    ) -> _BatchOutcome:
        outcome = _BatchOutcome()
        if cancel_event is not None and cancel_event.is_set():
            outcome.failed = len(records)
            msg = f"Batch {number} (records {offset}-{offset + len(records) - 1}) was not sent: bulk call cancelled"
            outcome.errors.append(BatchCancelledError(msg, scope="batch", batch=number))
            DOCUMENTS_FAILED.labels(dataset=dataset).inc(outcome.failed)
            return outcome

        lines: list[bytes] = []
        pending: list[_PendingItem] = []
        for index, record in enumerate(records):
            position = offset + index
            document_id = ids[index] if ids is not None else None
            if not schema.accepts(record):
                outcome.failed += 1
                message = f"Record at position {position}: {_mismatch_message(dataset, schema, record)}"
                outcome.errors.append(SchemaMismatchError(message, position=position))
                continue
            try:
                body = serialize_record(record, schema, position=position, document_id=document_id)
            except SerializationError as exc:
                outcome.failed += 1
                outcome.errors.append(exc)
                continue

            partition = partition_name(dataset, record_timestamp(record, schema, now))
            action: dict[str, Any] = {"_index": partition}
            if document_id is not None:
                action["_id"] = document_id
            lines.append(orjson.dumps({"index": action}))
            lines.append(body)
            pending.append(_PendingItem(position, partition, document_id))

        if pending:
            self._send_batch(number, offset, lines, pending, schema, outcome)

        DOCUMENTS_INDEXED.labels(dataset=dataset).inc(outcome.indexed)
        DOCUMENTS_FAILED.labels(dataset=dataset).inc(outcome.failed)
        return outcome

    def _send_batch(
        self,
        number: int,
        offset: int,
        lines: list[bytes],
        pending: list[_PendingItem],
        schema: RecordSchema,
        outcome: _BatchOutcome,
    ) -> None:
        try:
            if self._settings.precreate_partitions:
                for partition in sorted({item.partition for item in pending}):
                    self.ensure_partition(partition, schema)
            response = self._engine.bulk(b"\n".join(lines) + b"\n")
        except EngineError as exc:
            outcome.failed += len(pending)
            msg = f"Bulk batch {number} starting at record {offset} failed: {exc.reason}"
            batch_error = IndexWriteError(msg, scope="batch", batch=number, status=exc.status, reason=exc.reason)
            batch_error.__cause__ = exc
            outcome.errors.append(batch_error)
            return

        items = response.get("items") or []
        for position_in_batch, item in enumerate(pending):
            if position_in_batch >= len(items):
                outcome.failed += 1
                msg = f"Record at position {item.position} is missing from the bulk response of batch {number}"
                outcome.errors.append(
                    IndexWriteError(
                        msg,
                        scope="item",
                        partition=item.partition,
                        document_id=item.document_id,
                        position=item.position,
                        batch=number,
                    )
                )
                continue

            result = next(iter(items[position_in_batch].values()), {})
            error = result.get("error")
            if error:
                _, reason = describe_engine_failure({"error": error})
                document_id = result.get("_id", item.document_id)
                outcome.failed += 1
                msg = f"Record at position {item.position} ({document_id}) rejected by {item.partition}: {reason}"
                outcome.errors.append(
                    IndexWriteError(
                        msg,
                        scope="item",
                        partition=item.partition,
                        document_id=document_id,
                        position=item.position,
                        batch=number,
                        status=result.get("status"),
                        reason=reason,
                    )
                )
                continue

            outcome.indexed += 1
            outcome.partitions.add(result.get("_index", item.partition))


def _mismatch_message(dataset: str, schema: RecordSchema, record: Any) -> str:
    return (
        f"{type(record).__qualname__} does not match the {schema.name} schema of dataset {dataset!r}; "
        "a dataset keeps the shape of its first record"
    )
