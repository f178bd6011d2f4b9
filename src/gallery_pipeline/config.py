"""
Gallery pipeline configuration.

Values come from a YAML file (optional) with environment variables taking
precedence, mirroring how the workers are deployed:

    object_store:
      location: photo-bucket
    record_store:
      location: image-table
    ingestion:
      valid_extensions: [".jpeg", ".png"]
    queue:
      max_receive_count: 3
      visibility_timeout_seconds: 30
    dead_letter:
      retention_days: 14
    stream:
      batch_size: 1
      starting_position: LATEST

All durations are in seconds unless the field name says otherwise.
"""

import os
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("config.yaml")


class StartingPosition(str, Enum):
    """Where a new change-stream subscription begins reading."""

    LATEST = "LATEST"  # Only mutations after subscription start
    TRIM_HORIZON = "TRIM_HORIZON"  # Oldest retained mutation


def _parse_extensions(raw: str) -> List[str]:
    return [ext.strip().lower() for ext in raw.split(",") if ext.strip()]


@dataclass
class QueueConfig:
    """Image queue retry behavior."""

    max_receive_count: int = 3
    visibility_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 1.0
    worker_concurrency: int = 10


@dataclass
class DeadLetterConfig:
    """Dead-letter queue retention and capacity."""

    retention_days: int = 14
    max_records: int = 100_000
    visibility_timeout_seconds: float = 30.0

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)


@dataclass
class StreamConfig:
    """Change-stream subscription for the confirmation handler."""

    batch_size: int = 1
    starting_position: StartingPosition = StartingPosition.LATEST
    retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 60.0
    poll_interval_seconds: float = 1.0
    # None keeps checkpoints in memory only
    checkpoint_dir: Optional[str] = None


@dataclass
class PipelineConfig:
    """Topology-wide configuration, supplied at build time.

    Load with PipelineConfig.from_env() or load_config().
    """

    object_store_location: str = "photo-bucket"
    record_store_location: str = "image-table"
    valid_extensions: List[str] = field(default_factory=lambda: [".jpeg", ".png"])
    sender_address: str = "no-reply@gallery.local"
    queue: QueueConfig = field(default_factory=QueueConfig)
    dead_letter: DeadLetterConfig = field(default_factory=DeadLetterConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Build configuration from the YAML document structure.

        Raises:
            ConfigurationError: If a section has unknown keys or bad types
        """
        data = data or {}
        object_store = data.get("object_store", {}) or {}
        record_store = data.get("record_store", {}) or {}
        ingestion = data.get("ingestion", {}) or {}
        notifications = data.get("notifications", {}) or {}

        defaults = cls()
        extensions = ingestion.get("valid_extensions", defaults.valid_extensions)
        if isinstance(extensions, str):
            extensions = _parse_extensions(extensions)

        stream_data = dict(data.get("stream", {}) or {})
        if "starting_position" in stream_data:
            stream_data["starting_position"] = _parse_position(
                stream_data["starting_position"]
            )

        return cls(
            object_store_location=object_store.get(
                "location", defaults.object_store_location
            ),
            record_store_location=record_store.get(
                "location", defaults.record_store_location
            ),
            valid_extensions=[str(e).lower() for e in extensions],
            sender_address=notifications.get("sender_address", defaults.sender_address),
            queue=_section(QueueConfig, data.get("queue"), "queue"),
            dead_letter=_section(DeadLetterConfig, data.get("dead_letter"), "dead_letter"),
            stream=_section(StreamConfig, stream_data, "stream"),
        )

    @classmethod
    def from_env(cls, base: Optional["PipelineConfig"] = None) -> "PipelineConfig":
        """Load configuration from environment variables.

        Optional environment variables (defaults from ``base`` or built-ins):
            OBJECT_STORE_LOCATION: photo-bucket
            RECORD_STORE_LOCATION: image-table
            VALID_EXTENSIONS: .jpeg,.png (comma-separated)
            SENDER_ADDRESS: no-reply@gallery.local
            QUEUE_MAX_RECEIVE_COUNT: 3
            QUEUE_VISIBILITY_TIMEOUT_SECONDS: 30
            QUEUE_POLL_INTERVAL_SECONDS: 1
            WORKER_CONCURRENCY: 10
            DLQ_RETENTION_DAYS: 14
            DLQ_MAX_RECORDS: 100000
            STREAM_BATCH_SIZE: 1
            STREAM_STARTING_POSITION: LATEST
            STREAM_RETRY_DELAY_SECONDS: 1
            STREAM_CHECKPOINT_DIR: (unset = in-memory checkpoints)

        Raises:
            ConfigurationError: If a variable cannot be parsed
        """
        base = base or cls()

        try:
            queue = replace(
                base.queue,
                max_receive_count=int(
                    os.getenv("QUEUE_MAX_RECEIVE_COUNT", base.queue.max_receive_count)
                ),
                visibility_timeout_seconds=float(
                    os.getenv(
                        "QUEUE_VISIBILITY_TIMEOUT_SECONDS",
                        base.queue.visibility_timeout_seconds,
                    )
                ),
                poll_interval_seconds=float(
                    os.getenv("QUEUE_POLL_INTERVAL_SECONDS", base.queue.poll_interval_seconds)
                ),
                worker_concurrency=int(
                    os.getenv("WORKER_CONCURRENCY", base.queue.worker_concurrency)
                ),
            )
            dead_letter = replace(
                base.dead_letter,
                retention_days=int(
                    os.getenv("DLQ_RETENTION_DAYS", base.dead_letter.retention_days)
                ),
                max_records=int(os.getenv("DLQ_MAX_RECORDS", base.dead_letter.max_records)),
            )
            stream = replace(
                base.stream,
                batch_size=int(os.getenv("STREAM_BATCH_SIZE", base.stream.batch_size)),
                starting_position=_parse_position(
                    os.getenv("STREAM_STARTING_POSITION", base.stream.starting_position.value)
                ),
                retry_delay_seconds=float(
                    os.getenv("STREAM_RETRY_DELAY_SECONDS", base.stream.retry_delay_seconds)
                ),
                checkpoint_dir=os.getenv("STREAM_CHECKPOINT_DIR", base.stream.checkpoint_dir),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment configuration: {e}", cause=e)

        extensions_env = os.getenv("VALID_EXTENSIONS")
        return cls(
            object_store_location=os.getenv(
                "OBJECT_STORE_LOCATION", base.object_store_location
            ),
            record_store_location=os.getenv(
                "RECORD_STORE_LOCATION", base.record_store_location
            ),
            valid_extensions=(
                _parse_extensions(extensions_env)
                if extensions_env is not None
                else list(base.valid_extensions)
            ),
            sender_address=os.getenv("SENDER_ADDRESS", base.sender_address),
            queue=queue,
            dead_letter=dead_letter,
            stream=stream,
        )

    def validate(self) -> "PipelineConfig":
        """Check values a topology cannot be built from.

        Raises:
            ConfigurationError: On the first invalid value
        """
        if not self.object_store_location:
            raise ConfigurationError("object_store_location is required")
        if not self.record_store_location:
            raise ConfigurationError("record_store_location is required")
        if not self.valid_extensions:
            raise ConfigurationError("valid_extensions must list at least one extension")
        for ext in self.valid_extensions:
            if not ext.startswith("."):
                raise ConfigurationError(
                    f"valid extension '{ext}' must start with '.'",
                    context={"extension": ext},
                )
        if self.queue.max_receive_count < 1:
            raise ConfigurationError("queue.max_receive_count must be >= 1")
        if self.queue.visibility_timeout_seconds <= 0:
            raise ConfigurationError("queue.visibility_timeout_seconds must be > 0")
        if self.queue.poll_interval_seconds <= 0:
            raise ConfigurationError("queue.poll_interval_seconds must be > 0")
        if self.queue.worker_concurrency < 1:
            raise ConfigurationError("queue.worker_concurrency must be >= 1")
        if self.dead_letter.retention_days < 1:
            raise ConfigurationError("dead_letter.retention_days must be >= 1")
        if self.dead_letter.max_records < 1:
            raise ConfigurationError("dead_letter.max_records must be >= 1")
        if self.stream.batch_size < 1:
            raise ConfigurationError("stream.batch_size must be >= 1")
        if self.stream.retry_delay_seconds < 0:
            raise ConfigurationError("stream.retry_delay_seconds must be >= 0")
        return self


def _parse_position(value: Any) -> StartingPosition:
    if isinstance(value, StartingPosition):
        return value
    try:
        return StartingPosition(str(value).upper())
    except ValueError:
        raise ConfigurationError(
            f"Unknown stream starting position: {value!r}",
            context={"allowed": [p.value for p in StartingPosition]},
        )


def _section(section_cls: type, data: Optional[Dict[str, Any]], name: str):
    data = data or {}
    known = {f.name for f in fields(section_cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in '{name}' section: {sorted(unknown)}",
            context={"section": name},
        )
    try:
        return section_cls(**data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid '{name}' section: {e}", cause=e)


def load_config(path: Optional[Path] = None) -> PipelineConfig:
    """Load YAML configuration, apply environment overrides and validate.

    A missing file is not an error when no path was given explicitly.

    Raises:
        ConfigurationError: If the file is unreadable or any value is invalid
    """
    explicit = path is not None
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH

    data: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}", cause=e)
        if not isinstance(data, dict):
            raise ConfigurationError(f"Top level of {path} must be a mapping")
    elif explicit:
        raise ConfigurationError(f"Config file not found: {path}")

    return PipelineConfig.from_env(base=PipelineConfig.from_dict(data)).validate()
