"""
Status conditions and the sink they are written to.

Policies carry Accepted and Programmed conditions. Every object affected by
at least one policy carries the RateLimitPolicyAffected condition, whose
observed generation is always the affected object's own generation.
"""

import logging
from typing import List, Optional, Protocol

from pydantic import BaseModel, Field

from gateway_ratelimit.policy.models import TargetRef

logger = logging.getLogger(__name__)

# Condition types
ACCEPTED = "Accepted"
PROGRAMMED = "Programmed"
POLICY_AFFECTED = "RateLimitPolicyAffected"

# Accepted reasons
REASON_ACCEPTED = "Accepted"
REASON_INVALID = "Invalid"
REASON_TARGET_NOT_FOUND = "TargetNotFound"
REASON_CONFLICTED = "Conflicted"

# Programmed reasons
REASON_PROGRAMMED = "Programmed"
REASON_PARTIALLY_INVALID = "PartiallyInvalid"

# Affected reasons
REASON_POLICY_AFFECTED = "PolicyAffected"
REASON_POLICY_NOT_AFFECTED = "PolicyNotAffected"


class StatusCondition(BaseModel):
    """One condition of a policy status."""
    type: str = Field(description="Condition type")
    status: bool = Field(description="Condition status")
    reason: str = Field(description="Machine-readable reason")
    message: str = Field(default="", description="Human-readable message")


class StatusUpdate(BaseModel):
    """Status tuple handed to the status writer."""
    target: TargetRef = Field(description="Object whose status is written")
    condition_type: str = Field(description="Condition type")
    status: bool = Field(description="Condition status")
    reason: str = Field(description="Machine-readable reason")
    message: str = Field(default="", description="Human-readable message")
    observed_generation: int = Field(default=0, description="Generation of the object the status is written to")
    controller_name: Optional[str] = Field(default=None, description="Controller writing the condition")


class StatusWriter(Protocol):
    def write(self, update: StatusUpdate) -> None:
        ...


class RecordingStatusWriter:
    """Status writer keeping every update in memory."""

    def __init__(self):
        self.updates: List[StatusUpdate] = []

    def write(self, update: StatusUpdate) -> None:
        self.updates.append(update)

    def for_target(self, target: TargetRef) -> List[StatusUpdate]:
        return [u for u in self.updates if u.target == target]

    def latest(self, target: TargetRef, condition_type: str) -> Optional[StatusUpdate]:
        found = [u for u in self.for_target(target) if u.condition_type == condition_type]
        return found[-1] if found else None


class LoggingStatusWriter:
    """Status writer that only logs, used by the CLI."""

    def write(self, update: StatusUpdate) -> None:
        logger.info(
            f"{update.target} {update.condition_type}={update.status} "
            f"reason={update.reason} generation={update.observed_generation}"
            + (f": {update.message}" if update.message else "")
        )
