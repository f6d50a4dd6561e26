"""
Snapshot providers.

A snapshot is the immutable set of Gateways, Routes and policies one
reconciliation pass works on. The file provider reads a YAML (or JSON)
document of the form:

    gateways:
      - {namespace: default, name: edge, generation: 3}
    routes:
      - {kind: HTTPRoute, namespace: default, name: api, parent_refs: [edge]}
    policies:
      - namespace: default
        name: limits
        target_refs: [{kind: Gateway, name: edge}]
        local: {zones: [...], rules: [...]}

Items that fail model validation are rejected one by one so that a single
malformed object does not block the rest of the snapshot.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Type, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from gateway_ratelimit.policy.models import Gateway, Policy, Route, ValidationIssue

logger = logging.getLogger(__name__)

SECTIONS = ("gateways", "routes", "policies")


class SnapshotError(Exception):
    """Exception raised when a snapshot document cannot be read at all."""

    def __init__(self, message: str, issues: Optional[List[ValidationIssue]] = None):
        self.message = message
        self.issues = issues or []
        super().__init__(message)


class ResourceSnapshot(BaseModel):
    """Objects seen by one reconciliation pass."""
    gateways: List[Gateway] = Field(default_factory=list)
    routes: List[Route] = Field(default_factory=list)
    policies: List[Policy] = Field(default_factory=list)
    rejected: List[ValidationIssue] = Field(default_factory=list, description="Items that failed to load")


class SnapshotProvider(Protocol):
    def snapshot(self) -> ResourceSnapshot:
        ...


class StaticSnapshotProvider:
    """Provider returning objects held in memory."""

    def __init__(self, gateways: Sequence[Gateway] = (), routes: Sequence[Route] = (),
                 policies: Sequence[Policy] = ()):
        self._snapshot = ResourceSnapshot(gateways=list(gateways), routes=list(routes), policies=list(policies))

    def snapshot(self) -> ResourceSnapshot:
        return self._snapshot.model_copy(deep=True)


def _item_label(section: str, raw: Any) -> List[str]:
    if section == "policies" and isinstance(raw, dict) and raw.get("name"):
        return [f"{raw.get('namespace') or 'default'}/{raw['name']}"]
    return []


def _pointer(loc: Sequence[Union[int, str]]) -> str:
    return "/" + "/".join(str(part) for part in loc)


def parse_snapshot(data: Any) -> ResourceSnapshot:
    """
    Build a snapshot from a decoded document.

    Raises:
        SnapshotError: If the document is not a mapping of object lists
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SnapshotError("Snapshot must be a mapping with gateways, routes and policies")

    unknown = sorted(set(data) - set(SECTIONS))
    if unknown:
        raise SnapshotError(f"Unknown snapshot section(s): {', '.join(unknown)}")

    models: Dict[str, Type[BaseModel]] = {"gateways": Gateway, "routes": Route, "policies": Policy}
    loaded: Dict[str, List[BaseModel]] = {section: [] for section in SECTIONS}
    rejected: List[ValidationIssue] = []

    for section in SECTIONS:
        items = data.get(section) or []
        if not isinstance(items, list):
            raise SnapshotError(f"Snapshot section {section} must be a list")

        for i, raw in enumerate(items):
            try:
                loaded[section].append(models[section].model_validate(raw))
            except ValidationError as e:
                for error in e.errors():
                    rejected.append(ValidationIssue(
                        path=_pointer([section, i, *error["loc"]]),
                        message=error["msg"],
                        policies=_item_label(section, raw),
                    ))
                logger.warning(f"Rejected {section}[{i}]: {e.error_count()} validation error(s)")

    return ResourceSnapshot(rejected=rejected, **loaded)


class FileSnapshotProvider:
    """Provider reading a YAML or JSON snapshot file on every call."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def snapshot(self) -> ResourceSnapshot:
        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise SnapshotError(f"Cannot read snapshot {self.path}: {e}") from e
        except yaml.YAMLError as e:
            raise SnapshotError(f"Cannot parse snapshot {self.path}: {e}") from e

        snapshot = parse_snapshot(data)
        logger.debug(
            f"Loaded snapshot {self.path}: {len(snapshot.gateways)} gateways, {len(snapshot.routes)} routes, "
            f"{len(snapshot.policies)} policies, {len(snapshot.rejected)} rejected"
        )
        return snapshot
