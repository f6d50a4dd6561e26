from typing import Callable, Dict, List, Optional

from gateway_ratelimit.config import settings
from gateway_ratelimit.policy.compile import ConditionCompiler
from gateway_ratelimit.policy.models import (
    GATEWAY_API_GROUP, SUPPORTED_TARGET_KINDS, Buffering, Policy, RateLimitBlock,
    RateLimitGroup, Severity, ValidationIssue
)
from gateway_ratelimit.validation.values import (
    ValueValidationError, validate_key_expression, validate_rate, validate_size,
    validate_zone_name
)

_compiler = ConditionCompiler()


def _check(issues: List[ValidationIssue], path: str, validator: Callable[[str], None], value: str) -> None:
    try:
        validator(value)
    except ValueValidationError as e:
        issues.append(ValidationIssue(path=path, message=str(e)))


def _lint_target_refs(policy: Policy, max_refs: int, errors: List[ValidationIssue]) -> None:
    refs = policy.target_refs
    if len(refs) == 0:
        errors.append(ValidationIssue(path="/target_refs", message="At least one target reference is required."))
    elif len(refs) > max_refs:
        errors.append(ValidationIssue(
            path="/target_refs", message=f"At most {max_refs} target references are allowed, got {len(refs)}."
        ))

    seen = set()
    for i, ref in enumerate(refs):
        path = f"/target_refs/{i}"
        if ref.group != GATEWAY_API_GROUP:
            errors.append(ValidationIssue(path=f"{path}/group", message=f"Group must be {GATEWAY_API_GROUP}."))
        if ref.kind not in SUPPORTED_TARGET_KINDS:
            errors.append(ValidationIssue(
                path=f"{path}/kind", message=f"Kind must be one of {', '.join(SUPPORTED_TARGET_KINDS)}."
            ))
        if ref.namespace and ref.namespace != policy.namespace:
            errors.append(ValidationIssue(
                path=f"{path}/namespace", message="Target must be in the same namespace as the policy."
            ))
        resolved = ref.in_namespace(policy.namespace)
        if resolved in seen:
            errors.append(ValidationIssue(path=path, message=f"Duplicate target reference {resolved}."))
        seen.add(resolved)


def _lint_block(group: RateLimitGroup, block: RateLimitBlock,
                errors: List[ValidationIssue], warnings: List[ValidationIssue]) -> None:
    base = f"/{group.value}"
    if not block.zones and not block.rules:
        errors.append(ValidationIssue(path=base, message="At least one zone or rule is required."))

    zone_names = set()
    for i, zone in enumerate(block.zones):
        path = f"{base}/zones/{i}"
        _check(errors, f"{path}/name", validate_zone_name, zone.name)
        _check(errors, f"{path}/rate", validate_rate, zone.rate)
        _check(errors, f"{path}/key", validate_key_expression, zone.key)
        _check(errors, f"{path}/size", validate_size, zone.size)
        if zone.name in zone_names:
            errors.append(ValidationIssue(path=f"{path}/name", message=f"Duplicate zone {zone.name}."))
        zone_names.add(zone.name)

    rule_zones = set()
    for i, rule in enumerate(block.rules):
        path = f"{base}/rules/{i}"
        _check(errors, f"{path}/zone_name", validate_zone_name, rule.zone_name)
        if rule.zone_name in rule_zones:
            errors.append(ValidationIssue(
                path=f"{path}/zone_name", message=f"Zone {rule.zone_name} is already used by another rule."
            ))
        rule_zones.add(rule.zone_name)

        if rule.delay is not None and rule.no_delay:
            errors.append(ValidationIssue(path=f"{path}/delay", message="delay and no_delay are mutually exclusive."))
        if rule.burst is None and (rule.no_delay or rule.delay is not None):
            warnings.append(ValidationIssue(
                path=f"{path}/burst", message="delay and no_delay have no effect without burst.",
                severity=Severity.WARN,
            ))

        errors.extend(_compiler.validate_condition(rule, f"{path}/condition"))


def _lint_buffering(buffering: Buffering, errors: List[ValidationIssue]) -> None:
    if buffering.disable and buffering.sizing_fields:
        errors.append(ValidationIssue(
            path="/buffering/disable",
            message=f"disable cannot be combined with {', '.join(buffering.sizing_fields)}.",
        ))
    if buffering.buffer_size is not None:
        _check(errors, "/buffering/buffer_size", validate_size, buffering.buffer_size)
    if buffering.buffers is not None:
        _check(errors, "/buffering/buffers/size", validate_size, buffering.buffers.size)
    if buffering.busy_buffers_size is not None:
        _check(errors, "/buffering/busy_buffers_size", validate_size, buffering.busy_buffers_size)


def lint_policy(policy: Policy, max_target_refs: Optional[int] = None) -> Dict[str, List[ValidationIssue]]:
    """
    Check one policy in isolation.

    Returns a {"errors": [], "warnings": []} structure; a policy with errors
    is rejected as a whole and never reaches the merge engine.
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    _lint_target_refs(policy, max_target_refs or settings.MAX_TARGET_REFS, errors)

    if policy.local is None and policy.global_ is None and policy.buffering is None:
        errors.append(ValidationIssue(path="/", message="Policy must configure local, global or buffering."))

    for group in (RateLimitGroup.LOCAL, RateLimitGroup.GLOBAL):
        block = policy.block(group)
        if block is not None:
            _lint_block(group, block, errors, warnings)

    if policy.buffering is not None:
        _lint_buffering(policy.buffering, errors)

    for issue in errors + warnings:
        issue.policies = [policy.key]

    return {"errors": errors, "warnings": warnings}
