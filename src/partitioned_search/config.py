"""Centralized configuration for partitioned-search using Pydantic Settings."""

from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ObservabilityCollectorConfig(BaseModel):
    """Configuration for OTLP trace and metric export."""

    model_config = {"extra": "forbid"}

    enabled: Annotated[
        bool,
        Field(description="Enable OTLP export to an external collector"),
    ] = False

    otlp_protocol: Annotated[
        Literal["http", "grpc"],
        Field(description="OTLP transport protocol"),
    ] = "grpc"

    collector_endpoint: Annotated[
        str,
        Field(
            description="OTLP collector endpoint (HTTP uses /v1/traces)",
            examples=["http://localhost:4317", "http://localhost:4318/v1/traces"],
        ),
    ] = "http://localhost:4317"

    headers: Annotated[
        dict[str, str],
        Field(description="Optional headers to include with OTLP requests"),
    ] = Field(default_factory=dict)

    timeout_seconds: Annotated[
        int,
        Field(ge=1, le=60, description="OTLP exporter timeout in seconds"),
    ] = 10

    grpc_insecure: Annotated[
        bool,
        Field(description="Use an insecure gRPC channel (local collectors)"),
    ] = True

    resource_attributes: Annotated[
        dict[str, str],
        Field(description="Extra OpenTelemetry resource attributes"),
    ] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Strictly typed configuration loaded from environment variables.

    Values are validated at construction, so a bad endpoint or batch size
    fails before any engine call is made.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_default=True,
        env_nested_delimiter="__",
        extra="ignore",  # Ignore extra env vars not defined in model
    )

    # Engine connection
    opensearch_endpoint: str = Field(default="http://localhost:9200", description="Search engine URL")
    opensearch_username: str = Field(default="", description="HTTP basic auth user (empty disables auth)")
    opensearch_password: SecretStr = Field(default=SecretStr(""), description="HTTP basic auth password")
    verify_certs: bool = Field(default=True, description="Verify TLS certificates of the engine")
    request_timeout_seconds: float = Field(
        default=30.0, gt=0, le=120, description="Deadline applied to every individual engine call"
    )
    max_retries: int = Field(default=3, ge=0, description="Transport-level retries performed by the client")
    retry_on_timeout: bool = Field(default=False, description="Let the client retry calls that timed out")

    # Partition settings written into every template
    number_of_shards: int = Field(default=3, ge=1, description="Primary shards per daily partition")
    number_of_replicas: int = Field(default=0, ge=0, description="Replicas per daily partition")
    refresh_interval: str = Field(default="1s", description="Partition refresh interval")
    precreate_partitions: bool = Field(
        default=False,
        description="Create each daily partition explicitly before writing (engines without auto-create)",
    )

    # Ingestion and query limits
    bulk_batch_size: int = Field(default=1000, ge=1, description="Maximum records per bulk request")
    bulk_max_workers: int = Field(default=8, ge=1, description="Concurrent bulk batches")
    max_page_size: int = Field(default=1000, ge=1, le=10000, description="Maximum hits returned per search")

    # Logging
    log_level: str = Field(default="info", description="Logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")

    observability: ObservabilityCollectorConfig = Field(default_factory=ObservabilityCollectorConfig)

    @model_validator(mode="after")
    def _check_endpoint(self) -> "Settings":
        if not self.opensearch_endpoint.startswith(("http://", "https://")):
            raise ValueError(
                "OPENSEARCH_ENDPOINT must be an http:// or https:// URL "
                f"(got {self.opensearch_endpoint!r})"
            )
        return self

    def basic_auth(self) -> tuple[str, str] | None:
        """Return ``(user, password)`` when basic auth is configured."""
        if not self.opensearch_username:
            return None
        return (self.opensearch_username, self.opensearch_password.get_secret_value())

    def partition_settings(self) -> dict[str, object]:
        """Index settings applied to every partition of every dataset."""
        return {
            "number_of_shards": self.number_of_shards,
            "number_of_replicas": self.number_of_replicas,
            "refresh_interval": self.refresh_interval,
        }
