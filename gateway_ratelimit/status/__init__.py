from gateway_ratelimit.status.conditions import (
    LoggingStatusWriter, RecordingStatusWriter, StatusCondition, StatusUpdate, StatusWriter
)
from gateway_ratelimit.status.tracker import AffectedDelta, AffectedObjectTracker

__all__ = [
    "AffectedDelta",
    "AffectedObjectTracker",
    "LoggingStatusWriter",
    "RecordingStatusWriter",
    "StatusCondition",
    "StatusUpdate",
    "StatusWriter",
]
