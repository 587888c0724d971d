"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping

DEFAULT_EXTENSIONS = ".txt,.pdf,.docx"
ENV_PREFIX = "DOCSYNC_"


def parse_extensions(raw: str | None) -> frozenset[str]:
    """Turn a comma separated extension list into a normalized set.

    Entries are trimmed and lowercased; anything not starting with a dot is dropped.
    """
    if raw is None or not raw.strip():
        return frozenset()
    items = (item.strip().lower() for item in raw.split(","))
    return frozenset(item for item in items if item and item.startswith("."))


def _parse_verify(raw: str) -> bool | str:
    lowered = raw.strip().lower()
    if lowered in {"true", "1", "yes"}:
        return True
    if lowered in {"false", "0", "no"}:
        return False
    return raw.strip()


@dataclass(slots=True)
class AppConfig:
    target_base_dir: Path | None = None
    supported_extensions: str = DEFAULT_EXTENSIONS

    elasticsearch_url: str = "http://localhost:9200"
    elasticsearch_username: str | None = None
    elasticsearch_password: str | None = None
    elasticsearch_verify: bool | str = True
    elasticsearch_timeout: float = 30.0
    index_name: str = "dms_files"

    kafka_bootstrap_servers: str = "localhost:9092"
    consumer_group_id: str = "docsync-indexer"
    upsert_topic: str = "dms-file-upsert-events"
    delete_topic: str = "dms-file-delete-events"
    upsert_dlq_topic: str | None = None
    delete_dlq_topic: str | None = None
    retry_max_attempts: int = 3
    retry_backoff_seconds: float = 5.0
    consumer_concurrency: int = 3

    chunk_size: int = 100
    chunk_retry_limit: int = 0
    batch_workers: int = 1
    state_db_path: Path = Path("data/docsync.db")

    def __post_init__(self) -> None:
        if self.target_base_dir is not None and not isinstance(self.target_base_dir, Path):
            self.target_base_dir = Path(self.target_base_dir)
        self.state_db_path = Path(self.state_db_path)
        if self.upsert_dlq_topic is None:
            self.upsert_dlq_topic = f"{self.upsert_topic}-dlq"
        if self.delete_dlq_topic is None:
            self.delete_dlq_topic = f"{self.delete_topic}-dlq"
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be at least 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        if self.consumer_concurrency < 1:
            raise ValueError("consumer_concurrency must be at least 1")
        if self.batch_workers < 1:
            raise ValueError("batch_workers must be at least 1")

    @property
    def extension_set(self) -> frozenset[str]:
        return parse_extensions(self.supported_extensions)

    def resolve_state_db_path(self, base_dir: Path | None = None) -> Path:
        if self.state_db_path.is_absolute() or base_dir is None:
            return self.state_db_path
        return base_dir / self.state_db_path

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: object) -> "AppConfig":
        """Build a config from ``DOCSYNC_*`` variables; explicit overrides win."""
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for item in fields(cls):
            raw = environ.get(ENV_PREFIX + item.name.upper())
            if raw is None:
                continue
            if item.name in {"target_base_dir", "state_db_path"}:
                values[item.name] = Path(raw)
            elif item.name == "elasticsearch_verify":
                values[item.name] = _parse_verify(raw)
            elif item.name in {
                "retry_max_attempts",
                "consumer_concurrency",
                "chunk_size",
                "chunk_retry_limit",
                "batch_workers",
            }:
                values[item.name] = int(raw)
            elif item.name in {"retry_backoff_seconds", "elasticsearch_timeout"}:
                values[item.name] = float(raw)
            else:
                values[item.name] = raw
        # Env name for the CA bundle follows the deployment convention
        ca_cert = environ.get(ENV_PREFIX + "ELASTICSEARCH_CA_CERT")
        if ca_cert:
            values["elasticsearch_verify"] = ca_cert
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]
