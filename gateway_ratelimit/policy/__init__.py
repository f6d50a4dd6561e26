"""
Rate limit policy system.

This package provides:
- Pydantic models for policies, targets and effective policies
- Per-policy linting
- Condition compilation into decision lists
- The merge engine resolving inherited policies per target
"""

from .models import (
    Policy, Zone, Rule, RateLimitBlock, Buffering, TargetRef, EffectivePolicy,
    DecisionList, ValidationIssue, Severity, IssueKind, RateLimitGroup
)
from .compile import ConditionCompiler, CompilationError, select_rules
from .linter import lint_policy
from .merge import MergeEngine

__all__ = [
    "Policy", "Zone", "Rule", "RateLimitBlock", "Buffering", "TargetRef", "EffectivePolicy",
    "DecisionList", "ValidationIssue", "Severity", "IssueKind", "RateLimitGroup",
    "ConditionCompiler", "CompilationError", "select_rules", "lint_policy", "MergeEngine"
]
