"""
Rule condition compilation.

This module turns the unordered rule set of one rate limit group into a
deterministic decision list. Rules are split into condition groups (JWT
claim, proxy variable, unconditional); each group keeps its concrete rules
in lexical order and its single default rule, if any, last. The external
runtime evaluates each group first-match-wins and falls back to the default.
"""

import logging
import re
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from gateway_ratelimit.policy.models import (
    PARTITION_ORDER, DecisionGroup, DecisionList, DefaultCondition, IssueKind,
    JWTClaimCondition, Partition, Rule, ValidationIssue, VariableCondition
)
from gateway_ratelimit.validation.values import (
    ValueValidationError, split_match_value, validate_claim_path, validate_match_value,
    validate_variable_name
)

logger = logging.getLogger(__name__)


class CompilationError(Exception):
    """Exception raised when a rule set cannot be compiled."""

    def __init__(self, issues: List[ValidationIssue]):
        self.issues = issues
        self.path = issues[0].path
        self.message = issues[0].message
        super().__init__("; ".join(f"{issue.path}: {issue.message}" for issue in issues))


def _sort_key(rule: Rule) -> Tuple[int, str, str, str]:
    condition = rule.condition
    if isinstance(condition, (JWTClaimCondition, VariableCondition)):
        return (PARTITION_ORDER.index(rule.partition), condition.subject, condition.match, rule.zone_name)
    return (PARTITION_ORDER.index(Partition.NONE), "", "", rule.zone_name)


class ConditionCompiler:
    """
    Compiler from rule sets to decision lists.

    Enforces that every condition group has at most one default rule and that
    every condition literal is safe to embed in the proxy configuration.
    """

    def validate_condition(self, rule: Rule, path: str) -> List[ValidationIssue]:
        """
        Validate the literals of a rule condition.

        Args:
            rule: Rule whose condition is checked
            path: JSON pointer of the condition

        Returns:
            List of syntax issues, empty if the condition is valid
        """
        condition = rule.condition
        issues: List[ValidationIssue] = []

        if isinstance(condition, JWTClaimCondition):
            checks = [(f"{path}/jwt/claim", validate_claim_path, condition.claim),
                      (f"{path}/jwt/match", validate_match_value, condition.match)]
        elif isinstance(condition, VariableCondition):
            checks = [(f"{path}/variable/name", validate_variable_name, condition.name),
                      (f"{path}/variable/match", validate_match_value, condition.match)]
        else:
            checks = []

        for field_path, validator, value in checks:
            try:
                validator(value)
            except ValueValidationError as e:
                issues.append(ValidationIssue(path=field_path, message=str(e)))

        return issues

    def compile(self, rules: Sequence[Rule], path: str = "/rules") -> DecisionList:
        """
        Compile a rule set into an ordered decision list.

        Args:
            rules: Rules of one rate limit group, in any order
            path: JSON pointer prefix used in issue paths

        Returns:
            DecisionList, identical for any ordering of the same rules

        Raises:
            CompilationError: On invalid literals, several defaults in one
                condition group, or duplicate conditions
        """
        issues: List[ValidationIssue] = []
        concrete: Dict[Partition, List[Rule]] = defaultdict(list)
        defaults: Dict[Partition, List[Rule]] = defaultdict(list)

        for rule in rules:
            issues.extend(self.validate_condition(rule, f"{path}/{rule.zone_name}/condition"))
            if rule.is_default:
                defaults[rule.partition].append(rule)
            else:
                concrete[rule.partition].append(rule)

        for partition in PARTITION_ORDER:
            offending = sorted(rule.zone_name for rule in defaults[partition])
            if len(offending) > 1:
                issues.append(ValidationIssue(
                    path=f"{path}/condition/default",
                    message=(
                        f"at most one rule may be the default of the {partition.value} condition group, "
                        f"found {len(offending)}: {', '.join(offending)}"
                    ),
                    kind=IssueKind.CONFLICT,
                ))
            issues.extend(self._duplicate_conditions(concrete[partition], path))

        if issues:
            raise CompilationError(issues)

        groups = []
        for partition in PARTITION_ORDER:
            ordered = sorted(concrete[partition], key=_sort_key)
            default = defaults[partition][0] if defaults[partition] else None
            if ordered or default is not None:
                groups.append(DecisionGroup(partition=partition, rules=ordered, default=default))

        logger.debug(f"Compiled {len(rules)} rules into {len(groups)} condition groups")
        return DecisionList(groups=groups)

    def _duplicate_conditions(self, rules: List[Rule], path: str) -> List[ValidationIssue]:
        seen: Dict[Tuple[str, str], str] = {}
        issues = []
        for rule in sorted(rules, key=_sort_key):
            condition = rule.condition
            if not isinstance(condition, (JWTClaimCondition, VariableCondition)):
                continue
            key = (condition.subject, condition.match)
            if key in seen:
                issues.append(ValidationIssue(
                    path=f"{path}/{rule.zone_name}/condition",
                    message=(
                        f"condition {condition.subject} == {condition.match!r} is already used by the rule "
                        f"for zone {seen[key]}; the rule for zone {rule.zone_name} could never match"
                    ),
                    kind=IssueKind.CONFLICT,
                ))
            else:
                seen[key] = rule.zone_name
        return issues


# Reference evaluation of compiled decision lists

def _claim_value(claims: Mapping[str, Any], claim_path: str) -> Optional[str]:
    current: Any = claims
    for part in claim_path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return None if current is None else str(current)


def _value_matches(value: Optional[str], match: str) -> bool:
    if value is None:
        return False
    operator, operand = split_match_value(match)
    if operator == "=":
        return value == operand
    flags = re.IGNORECASE if operator == "~*" else 0
    return re.search(operand, value, flags) is not None


def condition_matches(rule: Rule, claims: Mapping[str, Any], variables: Mapping[str, str]) -> bool:
    condition = rule.condition
    if isinstance(condition, JWTClaimCondition):
        return _value_matches(_claim_value(claims, condition.claim), condition.match)
    if isinstance(condition, VariableCondition):
        return _value_matches(variables.get(condition.name), condition.match)
    return condition is None or isinstance(condition, DefaultCondition)


def select_rules(decisions: DecisionList,
                 claims: Optional[Mapping[str, Any]] = None,
                 variables: Optional[Mapping[str, str]] = None) -> List[Rule]:
    """
    Select the rules that apply to one request.

    In each condition group the first matching rule wins, else its default.
    Unconditional rules always apply; the bare default rule applies only when
    no conditional group selected anything.

    Args:
        decisions: Compiled decision list
        claims: Decoded JWT claims of the request
        variables: Proxy variables of the request, keyed with their '$'

    Returns:
        Rules enforced for the request
    """
    claims = claims or {}
    variables = variables or {}
    selected: List[Rule] = []
    conditional_hit = False

    for group in decisions.groups:
        if group.partition == Partition.NONE:
            selected.extend(group.rules)
            if group.default is not None and not conditional_hit:
                selected.append(group.default)
            continue

        hit = next((rule for rule in group.rules if condition_matches(rule, claims, variables)), None)
        if hit is None:
            hit = group.default
        if hit is not None:
            selected.append(hit)
            conditional_hit = True

    return selected
