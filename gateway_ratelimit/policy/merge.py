"""
Policy merge engine.

This module combines the policies attached at the Gateway level with the
policies attached to a Route into the effective policy for each target.
The Local and Global groups are merged independently:

- zones are patched by name and the Gateway definition wins, so fleet-level
  capacity decisions cannot be resized by a namespace-scoped policy
- rules are keyed by zone name and the Route rule replaces the Gateway rule,
  so application owners control enforcement for their own traffic

A group with a dangling zone reference or a rule set the condition compiler
rejects is dropped for that target (fail closed); other groups and targets
keep resolving.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from gateway_ratelimit.policy.compile import CompilationError, ConditionCompiler
from gateway_ratelimit.policy.models import (
    Buffering, EffectiveGroup, EffectivePolicy, IssueKind, Policy, RateLimitGroup,
    Rule, Severity, TargetRef, ValidationIssue, Zone
)
from gateway_ratelimit.validation.values import ValueValidationError, parse_size, validate_size

logger = logging.getLogger(__name__)

GROUPS = (RateLimitGroup.LOCAL, RateLimitGroup.GLOBAL)
BUFFERING = "buffering"


class MergedGroup(BaseModel):
    """Zones and rules of one group after merging, before compilation."""
    zones: Dict[str, Zone] = Field(default_factory=dict, description="Zones by name")
    zone_owners: Dict[str, str] = Field(default_factory=dict, description="Zone name -> policy key")
    rules: Dict[str, Rule] = Field(default_factory=dict, description="Rules by zone name")
    rule_owners: Dict[str, str] = Field(default_factory=dict, description="Zone name -> policy key")
    failed: bool = Field(default=False, description="Same-level conflict, group cannot be applied")


class MergedLevel(BaseModel):
    """All groups of one hierarchy level, merged but not yet compiled."""
    model_config = ConfigDict(populate_by_name=True)

    local: Optional[MergedGroup] = None
    global_: Optional[MergedGroup] = Field(default=None, alias="global")
    buffering: Optional[Buffering] = None
    buffering_owners: List[str] = Field(default_factory=list)
    buffering_failed: bool = False

    def group(self, group: RateLimitGroup) -> Optional[MergedGroup]:
        return self.local if group == RateLimitGroup.LOCAL else self.global_

    def set_group(self, group: RateLimitGroup, merged: Optional[MergedGroup]) -> None:
        if group == RateLimitGroup.LOCAL:
            self.local = merged
        else:
            self.global_ = merged


class ResolvedLevel(BaseModel):
    """Outcome of resolving one target."""
    target: Optional[TargetRef] = Field(default=None, description="Resolved target")
    own: MergedLevel = Field(default_factory=MergedLevel, description="Policies attached to the target itself")
    merged: MergedLevel = Field(default_factory=MergedLevel, description="Own policies merged with inherited ones")
    effective: Optional[EffectivePolicy] = Field(default=None, description="Effective policy, None if nothing applies")
    issues: List[ValidationIssue] = Field(default_factory=list, description="Issues found for this target")


def _conflict(path: str, message: str, policies: Sequence[str], target: Optional[TargetRef],
              group: str, severity: Severity = Severity.ERROR) -> ValidationIssue:
    return ValidationIssue(
        path=path, message=message, severity=severity, kind=IssueKind.CONFLICT,
        policies=sorted(set(policies)), target=target, group=group,
    )


class MergeEngine:
    """
    Merge engine producing one effective policy per target.

    Gateways are resolved first with resolve_gateway(); every Route is then
    resolved against its parent Gateway's ResolvedLevel with resolve_route().
    """

    def __init__(self, compiler: Optional[ConditionCompiler] = None):
        """
        Initialize the engine.

        Args:
            compiler: Condition compiler used to validate merged rule sets
        """
        self.compiler = compiler or ConditionCompiler()

    def resolve(self, gateway_policy: Optional[Policy],
                route_policies: Optional[Sequence[Policy]] = None,
                target: Optional[TargetRef] = None) -> Tuple[Optional[EffectivePolicy], List[ValidationIssue]]:
        """
        Resolve one target from a Gateway-level policy and its Route-level policies.

        Args:
            gateway_policy: Policy attached to the Gateway, if any
            route_policies: Policies attached to the Route; None resolves the Gateway itself
            target: Target being resolved, recorded on issues

        Returns:
            Tuple of (effective policy or None, validation issues)
        """
        gateway = self.resolve_gateway([gateway_policy] if gateway_policy is not None else [])
        if route_policies is None:
            return gateway.effective, gateway.issues

        route = self.resolve_route(gateway, route_policies, target)
        return route.effective, gateway.issues + route.issues

    def resolve_gateway(self, policies: Sequence[Policy], target: Optional[TargetRef] = None) -> ResolvedLevel:
        """Resolve the policies attached directly to a Gateway."""
        issues: List[ValidationIssue] = []
        own = self._merge_level(policies, target, issues)
        effective = self._finalize(own, target, issues)
        return ResolvedLevel(target=target, own=own, merged=own, effective=effective, issues=issues)

    def resolve_route(self, gateway: Optional[ResolvedLevel], policies: Sequence[Policy],
                      target: Optional[TargetRef] = None) -> ResolvedLevel:
        """
        Resolve a Route against its parent Gateway.

        Args:
            gateway: Resolved parent Gateway, None if the Route has no resolvable parent
            policies: Policies attached directly to the Route
            target: Route being resolved

        Returns:
            ResolvedLevel for the Route
        """
        parent = gateway.merged if gateway is not None else MergedLevel()

        if not policies:
            # Identity merge: the Gateway's effective policy applies unchanged
            inherited = gateway.effective if gateway is not None else None
            return ResolvedLevel(target=target, merged=parent, effective=inherited)

        issues: List[ValidationIssue] = []
        own = self._merge_level(policies, target, issues)
        merged = self._inherit(parent, own, target, issues)
        effective = self._finalize(merged, target, issues)
        return ResolvedLevel(target=target, own=own, merged=merged, effective=effective, issues=issues)

    # ----- same-level merge -----

    def _merge_level(self, policies: Sequence[Policy], target: Optional[TargetRef],
                     issues: List[ValidationIssue]) -> MergedLevel:
        ordered = sorted(policies, key=lambda p: p.precedence_key)
        level = MergedLevel()

        for group in GROUPS:
            merged: Optional[MergedGroup] = None
            for policy in ordered:
                block = policy.block(group)
                if block is None:
                    continue
                if merged is None:
                    merged = MergedGroup()
                self._add_entries(merged, "zones", [(z.name, z) for z in block.zones],
                                  policy.key, group, target, issues)
                self._add_entries(merged, "rules", [(r.zone_name, r) for r in block.rules],
                                  policy.key, group, target, issues)
            level.set_group(group, merged)

        self._merge_level_buffering(ordered, level, target, issues)
        return level

    def _add_entries(self, merged: MergedGroup, field: str, entries: List[Tuple[str, Any]],
                     owner: str, group: RateLimitGroup, target: Optional[TargetRef],
                     issues: List[ValidationIssue]) -> None:
        values = getattr(merged, field)
        owners = merged.zone_owners if field == "zones" else merged.rule_owners
        label = "zone" if field == "zones" else "rule for zone"

        for name, value in entries:
            if name not in values:
                values[name] = value
                owners[name] = owner
                continue
            if values[name] != value:
                issues.append(_conflict(
                    f"/{group.value}/{field}/{name}",
                    f"{label} {name} is defined differently by policies {owners[name]} and {owner} "
                    f"attached at the same level",
                    [owners[name], owner], target, group.value,
                ))
                merged.failed = True

    def _merge_level_buffering(self, ordered: Sequence[Policy], level: MergedLevel,
                               target: Optional[TargetRef], issues: List[ValidationIssue]) -> None:
        values: Dict[str, Any] = {}
        field_owners: Dict[str, str] = {}

        for policy in ordered:
            if policy.buffering is None:
                continue
            for name, value in policy.buffering.model_dump(exclude_none=True).items():
                if name in values and values[name] != value:
                    issues.append(_conflict(
                        f"/buffering/{name}",
                        f"buffering {name} is set differently by policies {field_owners[name]} and "
                        f"{policy.key} attached at the same level",
                        [field_owners[name], policy.key], target, BUFFERING,
                    ))
                    level.buffering_failed = True
                    continue
                values.setdefault(name, value)
                field_owners.setdefault(name, policy.key)

        if not values:
            return

        buffering = Buffering.model_validate(values)
        ignored = buffering.sizing_fields if buffering.disable else []
        if ignored:
            issues.append(ValidationIssue(
                path="/buffering",
                message=(
                    f"buffering is disabled by policy {field_owners['disable']} attached at the same level; "
                    f"{', '.join(ignored)} are ignored unless disable is set to false"
                ),
                severity=Severity.WARN,
                kind=IssueKind.PARTIAL,
                policies=sorted({field_owners[name] for name in ignored}),
                target=target,
                group=BUFFERING,
            ))
            buffering = Buffering(disable=True)
            field_owners = {"disable": field_owners["disable"]}

        level.buffering = buffering
        level.buffering_owners = sorted(set(field_owners.values()))

    # ----- cross-level merge -----

    def _inherit(self, parent: MergedLevel, child: MergedLevel, target: Optional[TargetRef],
                 issues: List[ValidationIssue]) -> MergedLevel:
        merged = MergedLevel()

        for group in GROUPS:
            p = parent.group(group)
            c = child.group(group)
            if p is not None and p.failed:
                issues.append(_conflict(
                    f"/{group.value}",
                    f"{group.value} rate limiting inherited from the Gateway level is in conflict",
                    list(p.zone_owners.values()) + list(p.rule_owners.values()), target, group.value,
                ))

            if c is None:
                merged.set_group(group, p)
                continue
            if p is None:
                merged.set_group(group, c)
                continue

            combined = MergedGroup(failed=p.failed or c.failed)
            # Gateway zones win
            combined.zones = {**c.zones, **p.zones}
            combined.zone_owners = {**c.zone_owners, **p.zone_owners}
            # Route rules win
            combined.rules = {**p.rules, **c.rules}
            combined.rule_owners = {**p.rule_owners, **c.rule_owners}
            merged.set_group(group, combined)

        merged.buffering_failed = parent.buffering_failed or child.buffering_failed
        merged.buffering, merged.buffering_owners = self._inherit_buffering(parent, child, target, issues)
        return merged

    def _inherit_buffering(self, parent: MergedLevel, child: MergedLevel, target: Optional[TargetRef],
                           issues: List[ValidationIssue]) -> Tuple[Optional[Buffering], List[str]]:
        if child.buffering is None:
            return parent.buffering, parent.buffering_owners
        if parent.buffering is None:
            return child.buffering, child.buffering_owners

        owners = sorted(set(parent.buffering_owners) | set(child.buffering_owners))
        own = child.buffering
        disable = own.disable if own.disable is not None else parent.buffering.disable

        if disable:
            ignored = own.sizing_fields
            if own.disable is None and ignored:
                issues.append(ValidationIssue(
                    path="/buffering",
                    message=(
                        f"buffering is disabled by an inherited policy; {', '.join(ignored)} "
                        "set here are ignored unless disable is set to false"
                    ),
                    severity=Severity.WARN,
                    kind=IssueKind.PARTIAL,
                    policies=child.buffering_owners,
                    target=target,
                    group=BUFFERING,
                ))
            return Buffering(disable=True), owners

        values = parent.buffering.model_dump(exclude_none=True)
        values.update(own.model_dump(exclude_none=True))
        return Buffering.model_validate(values), owners

    # ----- finalization -----

    def _finalize(self, merged: MergedLevel, target: Optional[TargetRef],
                  issues: List[ValidationIssue]) -> Optional[EffectivePolicy]:
        groups: Dict[RateLimitGroup, EffectiveGroup] = {}
        for group in GROUPS:
            merged_group = merged.group(group)
            if merged_group is None:
                continue
            effective = self._finalize_group(group, merged_group, target, issues)
            if effective is not None:
                groups[group] = effective

        buffering = None if merged.buffering_failed else merged.buffering
        if buffering is not None and not (self._buffer_sizes_valid(buffering, merged, target, issues)
                                          and self._buffer_sizes_consistent(buffering, merged, target, issues)):
            buffering = None

        if not groups and buffering is None:
            return None

        return EffectivePolicy(
            local=groups.get(RateLimitGroup.LOCAL),
            global_=groups.get(RateLimitGroup.GLOBAL),
            buffering=buffering,
            buffering_owners=merged.buffering_owners if buffering is not None else [],
        )

    def _finalize_group(self, group: RateLimitGroup, merged: MergedGroup, target: Optional[TargetRef],
                        issues: List[ValidationIssue]) -> Optional[EffectiveGroup]:
        if merged.failed:
            logger.warning(f"Dropping {group.value} rate limiting for {target}: conflicting policies")
            return None

        dangling = sorted(name for name in merged.rules if name not in merged.zones)
        if dangling:
            issues.append(_conflict(
                f"/{group.value}/rules",
                f"rules reference undefined zone(s): {', '.join(dangling)}",
                [merged.rule_owners[name] for name in dangling], target, group.value,
            ))
            logger.warning(f"Dropping {group.value} rate limiting for {target}: dangling zone references")
            return None

        if not merged.rules:
            # Zones without rules only offer capacity to lower levels
            return None

        try:
            decisions = self.compiler.compile(list(merged.rules.values()), path=f"/{group.value}/rules")
        except CompilationError as e:
            owners = sorted(set(merged.rule_owners.values()))
            for issue in e.issues:
                issues.append(issue.model_copy(update={"policies": owners, "target": target, "group": group.value}))
            logger.warning(f"Dropping {group.value} rate limiting for {target}: {e}")
            return None

        used = sorted({rule.zone_name for rule in merged.rules.values()})
        return EffectiveGroup(
            zones=[merged.zones[name] for name in used],
            decisions=decisions,
            zone_owners={name: merged.zone_owners[name] for name in used},
            rule_owners=dict(sorted(merged.rule_owners.items())),
        )

    def _buffer_sizes_valid(self, buffering: Buffering, merged: MergedLevel,
                            target: Optional[TargetRef], issues: List[ValidationIssue]) -> bool:
        sizes = {
            "/buffering/buffer_size": buffering.buffer_size,
            "/buffering/buffers/size": buffering.buffers.size if buffering.buffers else None,
            "/buffering/busy_buffers_size": buffering.busy_buffers_size,
        }
        valid = True
        for path, size in sizes.items():
            if size is None:
                continue
            try:
                validate_size(size)
            except ValueValidationError as e:
                issues.append(ValidationIssue(
                    path=path, message=str(e), policies=merged.buffering_owners, target=target, group=BUFFERING,
                ))
                valid = False
        if not valid:
            logger.warning(f"Dropping buffering for {target}: invalid sizes")
        return valid

    def _buffer_sizes_consistent(self, buffering: Buffering, merged: MergedLevel,
                                 target: Optional[TargetRef], issues: List[ValidationIssue]) -> bool:
        if buffering.disable or buffering.buffers is None or buffering.busy_buffers_size is None:
            return True

        busy = parse_size(buffering.busy_buffers_size)
        one_buffer = parse_size(buffering.buffers.size)
        lower = max(one_buffer, parse_size(buffering.buffer_size) if buffering.buffer_size else 0)
        upper = (buffering.buffers.number - 1) * one_buffer

        if lower <= busy <= upper:
            return True

        issues.append(_conflict(
            "/buffering/busy_buffers_size",
            f"busy_buffers_size {buffering.busy_buffers_size} must be at least {lower} bytes and at most "
            f"{upper} bytes (all buffers but one)",
            merged.buffering_owners, target, BUFFERING,
        ))
        return False
