"""Search engine gateway.

:class:`SearchEngine` is the narrow surface the rest of the package talks to.
:class:`OpenSearchEngine` implements it over ``opensearch-py``; every call
carries the configured deadline, runs inside a CLIENT span and has its latency
recorded. Library exceptions are normalized into :class:`EngineError` so the
template, ingestion and query layers see one error shape no matter which
transport failed.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
import logging
from typing import Any, Protocol, TypeVar, runtime_checkable

from opensearchpy import OpenSearch
from opensearchpy.exceptions import OpenSearchException, TransportError
from opentelemetry.trace import SpanKind

from partitioned_search.config import Settings
from partitioned_search.errors import EngineError
from partitioned_search.observability.metrics import ENGINE_ERRORS, ENGINE_LATENCY, track_latency
from partitioned_search.observability.tracing import create_span


logger = logging.getLogger(__name__)

T = TypeVar("T")

Body = Mapping[str, Any] | bytes | str


@runtime_checkable
class SearchEngine(Protocol):
    """Engine operations used by the partitioned search layer."""

    def info(self) -> dict[str, Any]:  # pragma: no cover - Protocol only
        """Return cluster info including ``version.number``."""

    def index_exists(self, index: str) -> bool:  # pragma: no cover - Protocol only
        """Return True when ``index`` exists."""

    def create_index(self, index: str, body: Mapping[str, Any]) -> dict[str, Any]:  # pragma: no cover
        """Create ``index`` with settings/mappings ``body``."""

    def put_index_template(  # pragma: no cover - Protocol only
        self,
        name: str,
        body: Mapping[str, Any],
        *,
        create: bool = True,
    ) -> dict[str, Any]:
        """Store a composable index template."""

    def get_index_template(self, name: str) -> dict[str, Any] | None:  # pragma: no cover - Protocol only
        """Return the stored composable template, or None when there is none."""

    def index_document(  # pragma: no cover - Protocol only
        self,
        index: str,
        body: Body,
        *,
        document_id: str | None = None,
    ) -> dict[str, Any]:
        """Write (upsert) one document."""

    def bulk(self, body: bytes) -> dict[str, Any]:  # pragma: no cover - Protocol only
        """Send a newline-delimited bulk request."""

    def refresh(self, indices: Sequence[str]) -> dict[str, Any]:  # pragma: no cover - Protocol only
        """Make recent writes to ``indices`` visible to search."""

    def search(  # pragma: no cover - Protocol only
        self,
        indices: Sequence[str],
        body: Mapping[str, Any],
        *,
        size: int,
    ) -> dict[str, Any]:
        """Run a query; missing indices are ignored."""

    def close(self) -> None:  # pragma: no cover - Protocol only
        """Release transport resources."""


def describe_engine_failure(info: Any, fallback: str | None = None) -> tuple[str | None, str]:
    """Return ``(error_type, reason)`` from an engine error body.

    Root-cause and failed-shard reasons are folded in, since the top-level
    reason of a search failure is usually just "all shards failed".
    """
    if isinstance(info, Mapping):
        error = info.get("error")
        if isinstance(error, Mapping):
            reasons: list[str] = []
            for candidate in (error, *error.get("root_cause", ()), *_shard_reasons(error)):
                reason = candidate.get("reason") if isinstance(candidate, Mapping) else None
                if isinstance(reason, str) and reason not in reasons:
                    reasons.append(reason)
            return error.get("type"), "; ".join(reasons) or str(error)
        if isinstance(error, str):
            return error, error
    return None, fallback or str(info)


def _shard_reasons(error: Mapping[str, Any]) -> list[Any]:
    return [shard.get("reason") for shard in error.get("failed_shards", ()) if isinstance(shard, Mapping)]


def _to_engine_error(operation: str, exc: OpenSearchException) -> EngineError:
    if isinstance(exc, TransportError):
        status = exc.status_code if isinstance(exc.status_code, int) else None
        error_type, reason = describe_engine_failure(exc.info, exc.error if isinstance(exc.error, str) else None)
        if reason is None or reason == "None":
            reason = str(exc)
        return EngineError(
            f"{operation} failed ({status or 'no status'}): {reason}",
            status=status,
            error_type=error_type or type(exc).__name__,
            reason=reason,
            info=exc.info,
        )
    return EngineError(f"{operation} failed: {exc}", error_type=type(exc).__name__, reason=str(exc))


class OpenSearchEngine:
    """:class:`SearchEngine` backed by a thread-safe ``OpenSearch`` client."""

    def __init__(self, client: OpenSearch, *, request_timeout: float = 30.0) -> None:
        self._client = client
        self._request_timeout = request_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        endpoint: str | None = None,
        credentials: Any = None,
    ) -> OpenSearchEngine:
        """Build a client for ``endpoint`` (default: ``settings.opensearch_endpoint``).

        ``credentials`` is a ``(user, password)`` pair or any auth object the
        client accepts (``AWSV4SignerAuth`` for example).
        """
        http_auth = credentials if credentials is not None else settings.basic_auth()
        client = OpenSearch(
            hosts=[endpoint or settings.opensearch_endpoint],
            http_auth=http_auth,
            verify_certs=settings.verify_certs,
            timeout=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
            retry_on_timeout=settings.retry_on_timeout,
            pool_maxsize=settings.bulk_max_workers,
            http_compress=True,
        )
        return cls(client, request_timeout=settings.request_timeout_seconds)

    @property
    def client(self) -> OpenSearch:
        return self._client

    def _call(self, operation: str, target: str | None, func: Callable[..., T], **kwargs: Any) -> T:
        attributes = {"db.system": "opensearch", "db.operation": operation, "db.opensearch.target": target}
        with (
            create_span(f"opensearch.{operation}", kind=SpanKind.CLIENT, attributes=attributes),
            track_latency(ENGINE_LATENCY, operation=operation),
        ):
            try:
                return func(request_timeout=self._request_timeout, **kwargs)
            except OpenSearchException as exc:
                error = _to_engine_error(operation, exc)
                ENGINE_ERRORS.labels(operation=operation, error_type=error.error_type or "unknown").inc()
                raise error from exc

    def info(self) -> dict[str, Any]:
        return self._call("info", None, self._client.info)

    def index_exists(self, index: str) -> bool:
        return bool(self._call("index_exists", index, self._client.indices.exists, index=index))

    def create_index(self, index: str, body: Mapping[str, Any]) -> dict[str, Any]:
        return self._call("create_index", index, self._client.indices.create, index=index, body=dict(body))

    def put_index_template(self, name: str, body: Mapping[str, Any], *, create: bool = True) -> dict[str, Any]:
        return self._call(
            "put_index_template",
            name,
            self._client.indices.put_index_template,
            name=name,
            body=dict(body),
            create=create,
        )

    def get_index_template(self, name: str) -> dict[str, Any] | None:
        try:
            response = self._call(
                "get_index_template", name, self._client.indices.get_index_template, name=name
            )
        except EngineError as exc:
            if exc.status == 404:
                return None
            raise
        for entry in response.get("index_templates") or ():
            if entry.get("name") == name:
                return dict(entry.get("index_template") or {})
        return None

    def index_document(self, index: str, body: Body, *, document_id: str | None = None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"index": index, "body": body}
        if document_id is not None:
            kwargs["id"] = document_id
        return self._call("index", index, self._client.index, **kwargs)

    def bulk(self, body: bytes) -> dict[str, Any]:
        return self._call("bulk", None, self._client.bulk, body=body)

    def refresh(self, indices: Sequence[str]) -> dict[str, Any]:
        target = ",".join(indices)
        return self._call("refresh", target, self._client.indices.refresh, index=target)

    def search(self, indices: Sequence[str], body: Mapping[str, Any], *, size: int) -> dict[str, Any]:
        target = ",".join(indices)
        return self._call(
            "search",
            target,
            self._client.search,
            index=target,
            body=dict(body),
            size=size,
            ignore_unavailable=True,
            allow_no_indices=True,
        )

    def close(self) -> None:
        self._client.close()
