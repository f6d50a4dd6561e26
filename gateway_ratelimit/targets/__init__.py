from gateway_ratelimit.targets.resolve import AttachmentGraph
from gateway_ratelimit.targets.snapshot import (
    FileSnapshotProvider, ResourceSnapshot, SnapshotError, SnapshotProvider, StaticSnapshotProvider,
    parse_snapshot
)

__all__ = [
    "AttachmentGraph",
    "FileSnapshotProvider",
    "ResourceSnapshot",
    "SnapshotError",
    "SnapshotProvider",
    "StaticSnapshotProvider",
    "parse_snapshot",
]
