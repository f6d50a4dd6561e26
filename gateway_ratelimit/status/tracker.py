import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from gateway_ratelimit.policy.models import AffectedObjectRecord, TargetRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AffectedDelta:
    """Targets entering and leaving the affected set in one pass."""
    added: FrozenSet[TargetRef] = frozenset()
    removed: FrozenSet[TargetRef] = frozenset()
    generations: Mapping[TargetRef, int] = field(default_factory=dict)
    previous: Mapping[TargetRef, int] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed

    @property
    def refreshed(self) -> FrozenSet[TargetRef]:
        """Targets that stayed affected but whose generation moved."""
        return frozenset(
            target for target, generation in self.generations.items()
            if target in self.previous and self.previous[target] != generation
        )


class AffectedObjectTracker:
    """
    Set of objects currently governed by at least one policy.

    One record per target no matter how many policies resolve against it.
    Records are created when a target first appears, refreshed in place while
    it stays present, and dropped as soon as a pass no longer includes it.
    Instances are independent of each other; update() is serialized by a lock.
    """

    def __init__(self):
        self._records: Dict[TargetRef, AffectedObjectRecord] = {}
        self._lock = threading.Lock()

    def update(self, targets: Iterable[TargetRef],
               generations: Optional[Mapping[TargetRef, int]] = None) -> AffectedDelta:
        """
        Replace the affected set with the targets of the current pass.

        Args:
            targets: Targets that received an effective policy
            generations: Object generation per target

        Returns:
            AffectedDelta with the transitions caused by this pass and the
            generations recorded before it, read under the same lock
        """
        generations = generations or {}
        current = frozenset(targets)

        with self._lock:
            previous = {target: record.generation for target, record in self._records.items()}
            added = frozenset(t for t in current if t not in self._records)
            removed = frozenset(t for t in self._records if t not in current)

            for target in removed:
                del self._records[target]

            for target in current:
                generation = generations.get(target, 0)
                record = self._records.get(target)
                if record is None:
                    self._records[target] = AffectedObjectRecord(target=target, generation=generation)
                else:
                    record.generation = generation

        if added or removed:
            logger.debug(f"Affected objects: +{len(added)} -{len(removed)}, {len(current)} total")
        return AffectedDelta(
            added=added, removed=removed,
            generations={target: generations.get(target, 0) for target in current},
            previous=previous,
        )

    def diff(self, targets: Iterable[TargetRef]) -> AffectedDelta:
        """Compute the transitions update() would produce, without applying them."""
        current = frozenset(targets)
        with self._lock:
            known = frozenset(self._records)
        return AffectedDelta(added=current - known, removed=known - current)

    def is_affected(self, target: TargetRef) -> bool:
        with self._lock:
            return target in self._records

    def records(self) -> List[AffectedObjectRecord]:
        with self._lock:
            records = [record.model_copy() for record in self._records.values()]
        return sorted(records, key=lambda r: r.target.sort_key())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
