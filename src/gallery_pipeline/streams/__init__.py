"""Record-store change stream, checkpoints and the joiner that consumes them."""

from gallery_pipeline.streams.checkpoint import CheckpointStore, FileCheckpointStore
from gallery_pipeline.streams.joiner import ChangeStreamJoiner
from gallery_pipeline.streams.stream import ChangeStream

__all__ = [
    "ChangeStream",
    "CheckpointStore",
    "FileCheckpointStore",
    "ChangeStreamJoiner",
]
