"""Error taxonomy for the partitioned search layer.

Every error raised to callers derives from :class:`SearchIndexError`. Errors
coming back from the engine are normalized into :class:`EngineError` by the
gateway and re-raised as one of the domain errors below with ``from`` chaining.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Literal


if TYPE_CHECKING:
    from partitioned_search.ingest import BulkIndexResult


WriteScope = Literal["call", "batch", "item"]


class SearchIndexError(Exception):
    """Base error for the partitioned search layer."""


class EngineError(SearchIndexError):
    """Normalized failure reported by the search engine or its transport."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        error_type: str | None = None,
        reason: str | None = None,
        info: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error_type = error_type
        self.reason = reason or message
        self.info = info

    @property
    def is_already_exists(self) -> bool:
        if self.error_type == "resource_already_exists_exception":
            return True
        return "already exists" in (self.reason or "").lower()

    @property
    def is_unknown_sort_field(self) -> bool:
        return "No mapping found for" in (self.reason or "")


class SearchConnectionError(SearchIndexError):
    """Raised when the cluster cannot be reached while constructing a client."""


class SchemaInferenceError(SearchIndexError, TypeError):
    """Raised when a value has no stable field set to build a mapping from."""


class SchemaMismatchError(SchemaInferenceError):
    """Raised when a record does not match the schema cached for its dataset."""

    def __init__(self, message: str, *, position: int | None = None) -> None:
        super().__init__(message)
        self.position = position


class TemplateCreationError(SearchIndexError):
    """Raised when the engine refuses an index template. Safe to retry."""

    def __init__(self, message: str, *, dataset: str, template: str) -> None:
        super().__init__(message)
        self.dataset = dataset
        self.template = template


class SerializationError(SearchIndexError):
    """Raised when a record cannot be rendered as an engine document."""

    def __init__(self, message: str, *, position: int | None = None, document_id: str | None = None) -> None:
        super().__init__(message)
        self.position = position
        self.document_id = document_id


class IndexWriteError(SearchIndexError):
    """Raised when the engine rejects a write.

    ``scope`` tells how much of the request failed: the single-record call,
    a whole bulk batch, or one item inside a bulk response.
    """

    def __init__(
        self,
        message: str,
        *,
        scope: WriteScope = "call",
        partition: str | None = None,
        document_id: str | None = None,
        position: int | None = None,
        batch: int | None = None,
        status: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.scope = scope
        self.partition = partition
        self.document_id = document_id
        self.position = position
        self.batch = batch
        self.status = status
        self.reason = reason


class BatchCancelledError(IndexWriteError):
    """A bulk batch that was never sent because the caller cancelled."""


class RefreshError(SearchIndexError):
    """Raised when a refresh fails after the write itself succeeded."""

    def __init__(self, message: str, *, partitions: Sequence[str]) -> None:
        super().__init__(message)
        self.partitions = tuple(partitions)


class AggregateError(SearchIndexError):
    """Every failure collected by one bulk call."""

    def __init__(self, errors: Sequence[SearchIndexError], result: BulkIndexResult | None = None) -> None:
        self.errors: tuple[SearchIndexError, ...] = tuple(errors)
        self.result = result
        super().__init__(self._summary())

    def _summary(self) -> str:
        if not self.errors:
            return "bulk indexing completed without errors"
        shown = "; ".join(str(error) for error in self.errors[:5])
        more = len(self.errors) - 5
        if more > 0:
            shown = f"{shown}; ... {more} more"
        return f"bulk indexing encountered {len(self.errors)} error(s): {shown}"

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self):
        return iter(self.errors)

    def failed_positions(self) -> tuple[int, ...]:
        """Return record positions that failed individually, in order."""
        positions = {
            position for error in self.errors if (position := getattr(error, "position", None)) is not None
        }
        return tuple(sorted(positions))


class UnsupportedFilterError(SearchIndexError, TypeError):
    """Raised when a filter value has no query translation."""

    def __init__(self, message: str, *, field: str) -> None:
        super().__init__(message)
        self.field = field


class QueryError(SearchIndexError):
    """Raised when the engine fails to execute a search."""

    def __init__(self, message: str, *, indices: Sequence[str]) -> None:
        super().__init__(message)
        self.indices = tuple(indices)
