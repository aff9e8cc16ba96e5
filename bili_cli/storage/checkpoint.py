"""
On-disk resume state for a single stream download.

The checkpoint sits beside the `.part` file it describes and records only
segments whose bytes were verified and fsynced before the record was written.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from bili_cli.exceptions import IoFailureError

from .atomic import write_json_atomic_async

log = logging.getLogger(__name__)

CHECKPOINT_SUFFIX = ".ckpt.json"
PART_SUFFIX = ".part"


def part_path_for(destination: Path) -> Path:
    return destination.with_name(destination.name + PART_SUFFIX)


def checkpoint_path_for(destination: Path) -> Path:
    return destination.with_name(destination.name + CHECKPOINT_SUFFIX)


@dataclass
class Checkpoint:
    """The persisted progress of one stream."""

    stream_key: str
    total_size: int
    segment_size: int
    completed: set[tuple[int, int]] = field(default_factory=set)
    updated_at: float = 0.0

    def matches(self, stream_key: str, total_size: int, segment_size: int) -> bool:
        return (
            self.stream_key == stream_key
            and self.total_size == total_size
            and self.segment_size == segment_size
        )

    def to_dict(self) -> dict:
        return {
            "stream_key": self.stream_key,
            "total_size": self.total_size,
            "segment_size": self.segment_size,
            "completed": [list(r) for r in sorted(self.completed)],
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            stream_key=str(data["stream_key"]),
            total_size=int(data["total_size"]),
            segment_size=int(data["segment_size"]),
            completed={(int(s), int(e)) for s, e in data.get("completed", [])},
            updated_at=float(data.get("updated_at", 0.0)),
        )


class CheckpointStore:
    """Loads, saves, and discards the checkpoint for one destination path."""

    def __init__(self, destination: Path):
        self.path = checkpoint_path_for(destination)

    def load(self) -> Optional[Checkpoint]:
        """Returns the stored checkpoint, or None when absent or unreadable."""
        if not self.path.is_file():
            return None
        try:
            return Checkpoint.from_dict(
                json.loads(self.path.read_text(encoding="utf-8"))
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning(f"[yellow]⚠ Discarding unreadable checkpoint {self.path.name}: {e}[/yellow]")
            return None

    async def save(self, checkpoint: Checkpoint) -> None:
        checkpoint.updated_at = time.time()
        try:
            await write_json_atomic_async(self.path, checkpoint.to_dict())
        except OSError as e:
            raise IoFailureError(f"Failed to persist checkpoint {self.path}: {e}") from e

    def discard(self) -> None:
        self.path.unlink(missing_ok=True)
