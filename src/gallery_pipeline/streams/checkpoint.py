"""
Checkpoint storage for change-stream consumers.

A checkpoint is the sequence number of the last record a consumer fully
processed. Resuming from it never reprocesses an acknowledged batch.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from core.errors import StoreUnavailableError
from core.logging import LoggedClass


class CheckpointStore(LoggedClass):
    """
    In-memory checkpoints keyed by consumer name.

    Checkpoints only ever move forward; ``set`` with an older sequence is
    ignored.
    """

    log_component = "checkpoint"

    def __init__(self):
        self._values: Dict[str, int] = {}
        super().__init__()

    def get(self, name: str) -> Optional[int]:
        return self._values.get(name)

    def set(self, name: str, sequence: int) -> None:
        current = self.get(name)
        if current is not None and sequence <= current:
            return
        self._write(name, sequence)
        self._values[name] = sequence
        self._log(logging.DEBUG, "Checkpoint updated", stream=name, checkpoint=sequence)

    def clear(self, name: str) -> None:
        self._values.pop(name, None)

    def _write(self, name: str, sequence: int) -> None:
        """Persist a checkpoint. Nothing to do for the in-memory store."""


class FileCheckpointStore(CheckpointStore):
    """
    Checkpoints persisted as one small JSON file per consumer.

    Usage:
        store = FileCheckpointStore(Path("/var/lib/gallery/checkpoints"))
        last = store.get("confirmation-mailer")
        store.set("confirmation-mailer", 42)
    """

    def __init__(self, storage_dir: Path):
        """
        Args:
            storage_dir: Directory holding the checkpoint files
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        super().__init__()

    def file_path(self, name: str) -> Path:
        return self.storage_dir / f".checkpoint_{name}.json"

    def get(self, name: str) -> Optional[int]:
        cached = self._values.get(name)
        if cached is not None:
            return cached

        path = self.file_path(name)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            value = int(data["sequence"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            # Unreadable checkpoint: resume from the configured starting position
            self._log_exception(
                e,
                "Failed to read checkpoint file",
                level=logging.WARNING,
                stream=name,
            )
            return None

        self._values[name] = value
        return value

    def _write(self, name: str, sequence: int) -> None:
        path = self.file_path(name)
        tmp_path = path.with_suffix(".tmp")
        payload = {
            "name": name,
            "sequence": sequence,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            tmp_path.write_text(json.dumps(payload), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreUnavailableError(
                f"Failed to write checkpoint '{name}'",
                cause=e,
                context={"path": str(path)},
            ) from e

    def clear(self, name: str) -> None:
        super().clear(name)
        path = self.file_path(name)
        if path.exists():
            path.unlink()
