"""
Resolution orchestrator.

Entry point of one reconciliation pass. resolve_all() is pure: it works on a
deep copy of its inputs, lints every policy, resolves every Gateway and then
every (Route, parent Gateway) pair, and assembles the per-target and
per-policy results. commit() is the only step with side effects: it updates
the affected-object tracker and hands status updates to the status writer.
A pass abandoned before commit() needs no rollback.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from gateway_ratelimit.config import Settings
from gateway_ratelimit.config import settings as default_settings
from gateway_ratelimit.policy.linter import lint_policy
from gateway_ratelimit.policy.merge import GROUPS, MergeEngine, ResolvedLevel
from gateway_ratelimit.policy.models import (
    AffectedObjectRecord, EffectivePolicy, Gateway, IssueKind, Policy, RateLimitGroup,
    Route, Severity, TargetRef, ValidationIssue, Zone
)
from gateway_ratelimit.status import conditions
from gateway_ratelimit.status.conditions import StatusCondition, StatusUpdate, StatusWriter
from gateway_ratelimit.status.tracker import AffectedDelta, AffectedObjectTracker
from gateway_ratelimit.targets.resolve import AttachmentGraph
from gateway_ratelimit.targets.snapshot import ResourceSnapshot

logger = logging.getLogger(__name__)


class TargetResolution(BaseModel):
    """Resolution of one target, or of one (Route, parent Gateway) pair."""
    target: TargetRef = Field(description="Resolved Gateway or Route")
    ancestor: Optional[TargetRef] = Field(default=None, description="Parent Gateway for Routes")
    generation: int = Field(default=0, description="Generation of the target object")
    effective_policy: Optional[EffectivePolicy] = Field(default=None, description="Policy enforced on the target")
    validation_errors: List[ValidationIssue] = Field(default_factory=list, description="Issues for this target")
    accepted: bool = Field(default=False, description="An effective policy applies")
    programmed: bool = Field(default=False, description="The effective policy applies without issues")


class PolicyStatus(BaseModel):
    """Conditions computed for one policy."""
    policy: TargetRef = Field(description="Policy object reference")
    generation: int = Field(description="Policy generation")
    conditions: List[StatusCondition] = Field(default_factory=list)
    issues: List[ValidationIssue] = Field(default_factory=list, description="Issues attributed to the policy")

    def condition(self, condition_type: str) -> Optional[StatusCondition]:
        return next((c for c in self.conditions if c.type == condition_type), None)


class ResolutionResult(BaseModel):
    """Everything one reconciliation pass computed."""
    targets: List[TargetResolution] = Field(default_factory=list)
    policies: List[PolicyStatus] = Field(default_factory=list)
    affected: List[AffectedObjectRecord] = Field(default_factory=list, description="Targets with a policy applied")
    rejected: List[ValidationIssue] = Field(default_factory=list, description="Snapshot items that failed to load")

    def for_target(self, target: TargetRef, ancestor: Optional[TargetRef] = None) -> Optional[TargetResolution]:
        for resolution in self.targets:
            if resolution.target == target and (ancestor is None or resolution.ancestor == ancestor):
                return resolution
        return None

    def policy_status(self, key: str) -> Optional[PolicyStatus]:
        return next((p for p in self.policies if f"{p.policy.namespace}/{p.policy.name}" == key), None)


def _format_issues(issues: Sequence[ValidationIssue]) -> str:
    return "; ".join(f"{issue.path}: {issue.message}" for issue in issues)


def _group_field(group: RateLimitGroup) -> str:
    return "local" if group == RateLimitGroup.LOCAL else "global_"


class ResolutionOrchestrator:
    """
    Runs reconciliation passes.

    The tracker is the only state kept between passes; give every
    orchestrator that must share affected-object state the same tracker.
    """

    def __init__(self, tracker: Optional[AffectedObjectTracker] = None, engine: Optional[MergeEngine] = None,
                 settings: Optional[Settings] = None):
        self.tracker = tracker or AffectedObjectTracker()
        self.engine = engine or MergeEngine()
        self.settings = settings or default_settings

    def resolve_all(self, gateways: Sequence[Gateway], routes: Sequence[Route],
                    policies: Sequence[Policy]) -> ResolutionResult:
        """
        Resolve every target of a snapshot.

        Args:
            gateways: Gateways of the snapshot
            routes: HTTPRoutes and GRPCRoutes of the snapshot
            policies: Rate limit policies of the snapshot

        Returns:
            ResolutionResult; nothing is committed until commit() is called
        """
        gateways = [g.model_copy(deep=True) for g in gateways]
        routes = [r.model_copy(deep=True) for r in routes]
        policies = [p.model_copy(deep=True) for p in policies]

        lint: Dict[str, Dict[str, List[ValidationIssue]]] = {}
        valid: List[Policy] = []
        for policy in sorted(policies, key=lambda p: p.precedence_key):
            lint[policy.key] = lint_policy(policy, self.settings.MAX_TARGET_REFS)
            if lint[policy.key]["errors"]:
                logger.warning(f"Policy {policy.key} rejected: {_format_issues(lint[policy.key]['errors'])}")
            else:
                valid.append(policy)

        graph = AttachmentGraph(gateways, routes, valid)

        gateway_levels: Dict[TargetRef, ResolvedLevel] = {}
        for gateway in graph.sorted_gateways():
            gateway_levels[gateway.ref] = self.engine.resolve_gateway(graph.policies_for(gateway.ref), gateway.ref)

        route_levels: List[Tuple[Route, Optional[TargetRef], ResolvedLevel]] = []
        for route in graph.sorted_routes():
            own = graph.policies_for(route.ref)
            parents = graph.parents_of(route)
            if not parents:
                route_levels.append((route, None, self.engine.resolve_route(None, own, route.ref)))
            for parent in parents:
                level = self.engine.resolve_route(gateway_levels[parent], own, route.ref)
                route_levels.append((route, parent, level))

        self._detect_sibling_zone_conflicts(gateway_levels, route_levels)

        resolutions = [self._resolution(gateway_levels[gateway.ref], None, gateway.generation)
                       for gateway in graph.sorted_gateways()]
        resolutions += [self._resolution(level, parent, route.generation) for route, parent, level in route_levels]

        affected: Dict[TargetRef, int] = {}
        for resolution in resolutions:
            if resolution.accepted:
                affected[resolution.target] = resolution.generation
        records = [
            AffectedObjectRecord(target=target, generation=generation)
            for target, generation in sorted(affected.items(), key=lambda item: item[0].sort_key())
        ]

        statuses = [self._policy_status(policy, lint[policy.key], graph, resolutions)
                    for policy in sorted(policies, key=lambda p: p.key)]

        issue_count = sum(len(r.validation_errors) for r in resolutions)
        logger.info(
            f"Resolved {len(resolutions)} targets from {len(valid)}/{len(policies)} valid policies: "
            f"{len(records)} affected, {issue_count} issues"
        )
        return ResolutionResult(targets=resolutions, policies=statuses, affected=records)

    def commit(self, result: ResolutionResult, writer: Optional[StatusWriter] = None) -> AffectedDelta:
        """
        Apply a pass: update the tracker and write status.

        Args:
            result: Result of resolve_all()
            writer: Status sink; None only updates the tracker

        Returns:
            AffectedDelta of this pass
        """
        generations = {record.target: record.generation for record in result.affected}
        delta = self.tracker.update(generations.keys(), generations)

        if delta.added or delta.removed:
            logger.info(f"Affected objects changed: {len(delta.added)} added, {len(delta.removed)} removed")

        if writer is None:
            return delta

        current = {resolution.target: resolution.generation for resolution in result.targets}
        for target in sorted(generations, key=lambda t: t.sort_key()):
            if target in delta.added or target in delta.refreshed:
                writer.write(self._affected_update(
                    target, True, conditions.REASON_POLICY_AFFECTED,
                    "Object is affected by a rate limit policy", generations[target],
                ))
        for target in sorted(delta.removed, key=lambda t: t.sort_key()):
            writer.write(self._affected_update(
                target, False, conditions.REASON_POLICY_NOT_AFFECTED,
                "Object is no longer affected by a rate limit policy", current.get(target, delta.previous[target]),
            ))

        for status in result.policies:
            for condition in status.conditions:
                writer.write(StatusUpdate(
                    target=status.policy,
                    condition_type=condition.type,
                    status=condition.status,
                    reason=condition.reason,
                    message=condition.message,
                    observed_generation=status.generation,
                    controller_name=self.settings.CONTROLLER_NAME,
                ))

        return delta

    def reconcile(self, snapshot: ResourceSnapshot, writer: Optional[StatusWriter] = None) -> ResolutionResult:
        """Resolve a snapshot and commit the result."""
        result = self.resolve_all(snapshot.gateways, snapshot.routes, snapshot.policies)
        result.rejected = list(snapshot.rejected)
        self.commit(result, writer)
        return result

    def _affected_update(self, target: TargetRef, status: bool, reason: str, message: str,
                         generation: int) -> StatusUpdate:
        return StatusUpdate(
            target=target,
            condition_type=self.settings.AFFECTED_CONDITION_TYPE,
            status=status,
            reason=reason,
            message=message,
            observed_generation=generation,
            controller_name=self.settings.CONTROLLER_NAME,
        )

    def _resolution(self, level: ResolvedLevel, ancestor: Optional[TargetRef], generation: int) -> TargetResolution:
        effective = level.effective
        accepted = effective is not None and not effective.is_empty
        blocking = [
            issue for issue in level.issues
            if issue.severity == Severity.ERROR or issue.kind == IssueKind.PARTIAL
        ]
        return TargetResolution(
            target=level.target,
            ancestor=ancestor,
            generation=generation,
            effective_policy=effective if accepted else None,
            validation_errors=list(level.issues),
            accepted=accepted,
            programmed=accepted and not blocking,
        )

    def _detect_sibling_zone_conflicts(self, gateway_levels: Dict[TargetRef, ResolvedLevel],
                                       route_levels: List[Tuple[Route, Optional[TargetRef], ResolvedLevel]]) -> None:
        """
        Find zones introduced at Route level with different definitions on
        sibling Routes of one Gateway.

        Zones the Gateway defines are authoritative and never collide.
        """
        siblings: Dict[TargetRef, List[ResolvedLevel]] = defaultdict(list)
        for _, parent, level in route_levels:
            if parent is not None:
                siblings[parent].append(level)

        for parent, levels in siblings.items():
            parent_merged = gateway_levels[parent].merged
            for group in GROUPS:
                parent_group = parent_merged.group(group)
                gateway_zones = parent_group.zones if parent_group is not None else {}

                definitions: Dict[str, List[Tuple[ResolvedLevel, Zone, str]]] = defaultdict(list)
                for level in levels:
                    own_group = level.own.group(group)
                    rendered = level.effective.group(group) if level.effective is not None else None
                    if own_group is None or rendered is None:
                        continue
                    for name in rendered.zone_owners:
                        if name in own_group.zones and name not in gateway_zones:
                            definitions[name].append((level, own_group.zones[name], own_group.zone_owners[name]))

                for name, entries in sorted(definitions.items()):
                    if len({entry[1].model_dump_json() for entry in entries}) < 2:
                        continue
                    self._report_sibling_conflict(parent, group, name, entries)

    def _report_sibling_conflict(self, parent: TargetRef, group: RateLimitGroup, name: str,
                                 entries: List[Tuple[ResolvedLevel, Zone, str]]) -> None:
        owners = sorted({owner for _, _, owner in entries})
        routes = sorted({str(level.target) for level, _, _ in entries})
        warn = self.settings.SIBLING_ZONE_CONFLICTS == "warn"
        message = (
            f"zone {name} is defined differently by policies {', '.join(owners)} on sibling routes "
            f"{', '.join(routes)} of {parent}"
        )

        for level, _, _ in entries:
            level.issues.append(ValidationIssue(
                path=f"/{group.value}/zones/{name}",
                message=message,
                severity=Severity.WARN if warn else Severity.ERROR,
                kind=IssueKind.CONFLICT,
                policies=owners,
                target=level.target,
                group=group.value,
            ))
            if warn or level.effective is None or level.effective.group(group) is None:
                continue

            remaining = level.effective.model_copy(update={_group_field(group): None})
            level.effective = None if remaining.is_empty else remaining
            logger.warning(f"Dropping {group.value} rate limiting for {level.target}: sibling zone conflict on {name}")

    def _policy_status(self, policy: Policy, lint: Dict[str, List[ValidationIssue]], graph: AttachmentGraph,
                       resolutions: List[TargetResolution]) -> PolicyStatus:
        key = policy.key
        status = PolicyStatus(policy=policy.ref, generation=policy.generation)

        if lint["errors"]:
            message = _format_issues(lint["errors"])
            status.issues = lint["errors"] + lint["warnings"]
            status.conditions = [
                StatusCondition(type=conditions.ACCEPTED, status=False, reason=conditions.REASON_INVALID,
                                message=message),
                StatusCondition(type=conditions.PROGRAMMED, status=False, reason=conditions.REASON_INVALID,
                                message=message),
            ]
            return status

        missing = graph.missing_refs.get(key, [])
        if not graph.attached.get(key):
            message = f"Target(s) not found: {', '.join(map(str, missing))}"
            status.issues = list(lint["warnings"])
            status.conditions = [
                StatusCondition(type=conditions.ACCEPTED, status=False, reason=conditions.REASON_TARGET_NOT_FOUND,
                                message=message),
            ]
            return status

        issues = list(lint["warnings"])
        applied = False
        for resolution in resolutions:
            issues.extend(i for i in resolution.validation_errors if key in i.policies)
            if resolution.effective_policy is not None and key in resolution.effective_policy.sources:
                applied = True
        status.issues = issues

        errors = [i for i in issues if i.severity == Severity.ERROR]
        partial = [i for i in issues if i.kind == IssueKind.PARTIAL]

        if not applied and any(i.kind == IssueKind.CONFLICT for i in errors):
            message = _format_issues(errors)
            status.conditions = [
                StatusCondition(type=conditions.ACCEPTED, status=False, reason=conditions.REASON_CONFLICTED,
                                message=message),
                StatusCondition(type=conditions.PROGRAMMED, status=False, reason=conditions.REASON_INVALID,
                                message=message),
            ]
            return status

        accepted_message = "Policy is accepted"
        if missing:
            accepted_message += f"; target(s) not found: {', '.join(map(str, missing))}"

        if partial:
            programmed = StatusCondition(type=conditions.PROGRAMMED, status=False,
                                         reason=conditions.REASON_PARTIALLY_INVALID,
                                         message=_format_issues(partial))
        elif errors:
            programmed = StatusCondition(type=conditions.PROGRAMMED, status=False,
                                         reason=conditions.REASON_INVALID, message=_format_issues(errors))
        else:
            programmed = StatusCondition(type=conditions.PROGRAMMED, status=True,
                                         reason=conditions.REASON_PROGRAMMED, message="Policy is programmed")

        status.conditions = [
            StatusCondition(type=conditions.ACCEPTED, status=True, reason=conditions.REASON_ACCEPTED,
                            message=accepted_message),
            programmed,
        ]
        return status
