"""Fixed instants used wherever the tests pin the ingestion clock."""

from datetime import datetime, timezone


FIXED_NOW = datetime(2024, 8, 24, 12, 30, tzinfo=timezone.utc)
