"""
Attachment graph.

Maps policies onto the Gateways and Routes they target. The hierarchy is
two levels deep: Routes attach to Gateways, policies attach to either, and
Routes never target Routes, so no traversal beyond one parent hop is needed.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from gateway_ratelimit.policy.models import GATEWAY_KIND, Gateway, Policy, Route, TargetRef

logger = logging.getLogger(__name__)


class AttachmentGraph:
    """Index of Gateways, Routes and the policies attached to each."""

    def __init__(self, gateways: Sequence[Gateway], routes: Sequence[Route], policies: Sequence[Policy]):
        self.gateways: Dict[TargetRef, Gateway] = {g.ref: g for g in gateways}
        self.routes: Dict[TargetRef, Route] = {r.ref: r for r in routes}
        self.policies_by_target: Dict[TargetRef, List[Policy]] = defaultdict(list)
        # Policy key -> refs that do not resolve to a known object
        self.missing_refs: Dict[str, List[TargetRef]] = {}
        # Policy key -> refs that do
        self.attached: Dict[str, List[TargetRef]] = {}

        for policy in policies:
            found, missing = [], []
            for ref in policy.resolved_target_refs():
                if ref in self.gateways or ref in self.routes:
                    self.policies_by_target[ref].append(policy)
                    found.append(ref)
                else:
                    missing.append(ref)
            self.attached[policy.key] = found
            if missing:
                self.missing_refs[policy.key] = missing
                logger.debug(f"Policy {policy.key} targets missing objects: {', '.join(map(str, missing))}")

    def policies_for(self, target: TargetRef) -> List[Policy]:
        return list(self.policies_by_target.get(target, []))

    def parents_of(self, route: Route) -> List[TargetRef]:
        """Gateways a Route attaches to, skipping parents that do not exist."""
        parents = []
        for name in route.parent_refs:
            ref = TargetRef(kind=GATEWAY_KIND, name=name, namespace=route.namespace)
            if ref in self.gateways:
                parents.append(ref)
            else:
                logger.debug(f"Route {route.ref} references unknown Gateway {ref}")
        return sorted(set(parents), key=lambda r: r.sort_key())

    def sorted_gateways(self) -> List[Gateway]:
        return [self.gateways[ref] for ref in sorted(self.gateways, key=lambda r: r.sort_key())]

    def sorted_routes(self) -> List[Route]:
        return [self.routes[ref] for ref in sorted(self.routes, key=lambda r: r.sort_key())]

    def generation_of(self, target: TargetRef) -> Optional[int]:
        obj = self.gateways.get(target) or self.routes.get(target)
        return obj.generation if obj is not None else None
