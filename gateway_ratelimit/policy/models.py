"""
Rate Limit Policy Models.

This module defines the Pydantic models for rate limit policies, the
Gateway and Route resources they attach to, and the effective policy
computed for every target on each reconciliation pass.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

GATEWAY_API_GROUP = "gateway.networking.k8s.io"
POLICY_GROUP = "gateway-ratelimit.io"
POLICY_KIND = "RateLimitPolicy"

GATEWAY_KIND = "Gateway"
ROUTE_KINDS = ("HTTPRoute", "GRPCRoute")
SUPPORTED_TARGET_KINDS = (GATEWAY_KIND,) + ROUTE_KINDS


class Severity(str, Enum):
    """Validation issue severity."""
    ERROR = "error"
    WARN = "warn"


class IssueKind(str, Enum):
    """Validation issue classes."""
    SYNTAX = "syntax"
    CONFLICT = "conflict"
    PARTIAL = "partial"


class RateLimitGroup(str, Enum):
    """Rate limit groups, merged independently of each other."""
    LOCAL = "local"
    GLOBAL = "global"


class ConditionKind(str, Enum):
    """Closed set of rule condition kinds."""
    JWT = "jwt"
    VARIABLE = "variable"
    DEFAULT = "default"


class Partition(str, Enum):
    """Condition groups a rule set is split into before compilation."""
    JWT = "jwt"
    VARIABLE = "variable"
    NONE = "none"


PARTITION_ORDER = (Partition.JWT, Partition.VARIABLE, Partition.NONE)


# ===== Targets =====

class TargetRef(BaseModel):
    """Reference to a Gateway, Route or policy object."""
    model_config = ConfigDict(frozen=True)

    group: str = Field(default=GATEWAY_API_GROUP, description="API group")
    kind: str = Field(description="Object kind: Gateway, HTTPRoute, GRPCRoute")
    name: str = Field(min_length=1, description="Object name")
    namespace: Optional[str] = Field(default=None, description="Namespace, defaults to the policy's own")

    def in_namespace(self, namespace: str) -> "TargetRef":
        if self.namespace:
            return self
        return self.model_copy(update={"namespace": namespace})

    @property
    def is_gateway(self) -> bool:
        return self.kind == GATEWAY_KIND

    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.namespace or "", self.kind, self.name, self.group)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class Gateway(BaseModel):
    """Gateway resource as seen by one reconciliation pass."""
    namespace: str = Field(default="default", description="Gateway namespace")
    name: str = Field(min_length=1, description="Gateway name")
    generation: int = Field(default=1, ge=0, description="Object generation")

    @property
    def ref(self) -> TargetRef:
        return TargetRef(kind=GATEWAY_KIND, name=self.name, namespace=self.namespace)


class Route(BaseModel):
    """HTTPRoute or GRPCRoute; both kinds resolve identically."""
    kind: Literal["HTTPRoute", "GRPCRoute"] = Field(default="HTTPRoute", description="Route kind")
    namespace: str = Field(default="default", description="Route namespace")
    name: str = Field(min_length=1, description="Route name")
    generation: int = Field(default=1, ge=0, description="Object generation")
    parent_refs: List[str] = Field(default_factory=list, description="Parent Gateway names in the same namespace")

    @property
    def ref(self) -> TargetRef:
        return TargetRef(kind=self.kind, name=self.name, namespace=self.namespace)


# ===== Policy Spec Models =====

class Zone(BaseModel):
    """Shared memory zone tracking request rates for one key."""
    name: str = Field(description="Zone name, referenced by rules")
    rate: str = Field(description="Request rate, e.g. 10r/s or 300r/m")
    key: str = Field(description="Key expression, e.g. $binary_remote_addr")
    size: str = Field(description="Zone memory size, e.g. 10m")


class JWTClaimCondition(BaseModel):
    """Matches a JWT claim value."""
    kind: Literal["jwt"] = "jwt"
    claim: str = Field(description="Dotted claim path, e.g. user_details.level")
    match: str = Field(description="Expected value; a leading ~ makes it a regex")
    default: bool = Field(default=False, description="Fallback rule of the JWT condition group")

    @property
    def subject(self) -> str:
        return self.claim


class VariableCondition(BaseModel):
    """Matches the value of a proxy variable."""
    kind: Literal["variable"] = "variable"
    name: str = Field(description="Proxy variable, e.g. $request_method")
    match: str = Field(description="Expected value; a leading ~ makes it a regex")
    default: bool = Field(default=False, description="Fallback rule of the variable condition group")

    @property
    def subject(self) -> str:
        return self.name


class DefaultCondition(BaseModel):
    """Bare default marker: applies when no conditional rule matched."""
    kind: Literal["default"] = "default"
    default: Literal[True] = True


Condition = Annotated[
    Union[JWTClaimCondition, VariableCondition, DefaultCondition],
    Field(discriminator="kind"),
]


def _tag_condition(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Turn the {jwt|variable, default} input shape into a tagged condition."""
    if "kind" in raw:
        return raw

    jwt = raw.get("jwt")
    variable = raw.get("variable")
    default = raw.get("default", False)

    if jwt is not None and variable is not None:
        raise ValueError("condition must set only one of jwt or variable")
    if jwt is not None and not isinstance(jwt, dict):
        raise ValueError("condition jwt must be a mapping")
    if variable is not None and not isinstance(variable, dict):
        raise ValueError("condition variable must be a mapping")
    if jwt is not None:
        return {"kind": ConditionKind.JWT.value, **jwt, "default": default}
    if variable is not None:
        return {"kind": ConditionKind.VARIABLE.value, **variable, "default": default}
    if default:
        return {"kind": ConditionKind.DEFAULT.value}
    raise ValueError("condition must set jwt, variable or default")


class Rule(BaseModel):
    """Enforcement directive referencing a zone."""
    zone_name: str = Field(description="Name of the zone this rule enforces")
    delay: Optional[int] = Field(default=None, ge=0, description="Requests after which excess is delayed")
    no_delay: bool = Field(default=False, description="Do not delay requests within the burst")
    burst: Optional[int] = Field(default=None, ge=0, description="Maximum burst size")
    dry_run: bool = Field(default=False, description="Account but never reject")
    log_level: Optional[Literal["info", "notice", "warn", "error"]] = Field(
        default=None, description="Log level for rejected requests"
    )
    reject_code: Optional[int] = Field(default=None, ge=400, le=599, description="Status for rejected requests")
    condition: Optional[Condition] = Field(default=None, description="Optional rule condition")

    @model_validator(mode="before")
    @classmethod
    def _normalize_condition(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("condition"), dict):
            data = {**data, "condition": _tag_condition(data["condition"])}
        return data

    @property
    def partition(self) -> Partition:
        if self.condition is None or self.condition.kind == ConditionKind.DEFAULT.value:
            return Partition.NONE
        return Partition(self.condition.kind)

    @property
    def is_default(self) -> bool:
        return self.condition is not None and self.condition.default


class RateLimitBlock(BaseModel):
    """Zones and rules of one rate limit group."""
    zones: List[Zone] = Field(default_factory=list, description="Zone definitions")
    rules: List[Rule] = Field(default_factory=list, description="Rules referencing zones")


class BufferSpec(BaseModel):
    """Number and size of response buffers."""
    number: int = Field(ge=2, description="Number of buffers")
    size: str = Field(description="Size of one buffer, e.g. 4k")


SIZING_FIELDS = ("buffer_size", "buffers", "busy_buffers_size")


class Buffering(BaseModel):
    """Response buffering settings, inherited field by field."""
    disable: Optional[bool] = Field(default=None, description="Disable response buffering")
    buffer_size: Optional[str] = Field(default=None, description="Size of the first response buffer")
    buffers: Optional[BufferSpec] = Field(default=None, description="Response buffers")
    busy_buffers_size: Optional[str] = Field(default=None, description="Busy buffers size limit")

    @property
    def sizing_fields(self) -> List[str]:
        return [name for name in SIZING_FIELDS if getattr(self, name) is not None]


class Policy(BaseModel):
    """Rate limit policy attached to Gateways and/or Routes."""
    model_config = ConfigDict(populate_by_name=True)

    namespace: str = Field(default="default", description="Policy namespace")
    name: str = Field(min_length=1, description="Policy name")
    generation: int = Field(default=1, ge=0, description="Object generation")
    creation_timestamp: Optional[datetime] = Field(default=None, description="Used to order same-level policies")
    target_refs: List[TargetRef] = Field(default_factory=list, description="Objects this policy attaches to")

    local: Optional[RateLimitBlock] = Field(default=None, description="Local rate limiting")
    global_: Optional[RateLimitBlock] = Field(default=None, alias="global", description="Global rate limiting")
    buffering: Optional[Buffering] = Field(default=None, description="Response buffering")

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def ref(self) -> TargetRef:
        return TargetRef(group=POLICY_GROUP, kind=POLICY_KIND, name=self.name, namespace=self.namespace)

    @property
    def precedence_key(self) -> Tuple[bool, float, str]:
        """Oldest first, then namespace/name, as for Gateway API policy conflicts."""
        ts = self.creation_timestamp
        return (ts is None, ts.timestamp() if ts else 0.0, self.key)

    def block(self, group: RateLimitGroup) -> Optional[RateLimitBlock]:
        return self.local if group == RateLimitGroup.LOCAL else self.global_

    def resolved_target_refs(self) -> List[TargetRef]:
        return [ref.in_namespace(self.namespace) for ref in self.target_refs]


# ===== Effective Policy Models =====

class DecisionGroup(BaseModel):
    """Ordered rules of one condition group, default last."""
    partition: Partition = Field(description="Condition group")
    rules: List[Rule] = Field(default_factory=list, description="Concrete rules in match order")
    default: Optional[Rule] = Field(default=None, description="Fallback rule")

    @property
    def ordered(self) -> List[Rule]:
        return self.rules + ([self.default] if self.default is not None else [])


class DecisionList(BaseModel):
    """Compiled decision list for one rate limit group."""
    groups: List[DecisionGroup] = Field(default_factory=list, description="Groups in evaluation order")

    @property
    def rules(self) -> List[Rule]:
        return [rule for group in self.groups for rule in group.ordered]


class EffectiveGroup(BaseModel):
    """Resolved zones and compiled rules of one rate limit group for one target."""
    zones: List[Zone] = Field(description="Zones referenced by surviving rules, sorted by name")
    decisions: DecisionList = Field(description="Compiled rules")
    zone_owners: Dict[str, str] = Field(default_factory=dict, description="Zone name -> defining policy")
    rule_owners: Dict[str, str] = Field(default_factory=dict, description="Zone name -> policy owning its rule")

    @property
    def rules(self) -> List[Rule]:
        return self.decisions.rules

    @property
    def sources(self) -> Set[str]:
        return set(self.zone_owners.values()) | set(self.rule_owners.values())


class EffectivePolicy(BaseModel):
    """Policy actually enforced for one target."""
    model_config = ConfigDict(populate_by_name=True)

    local: Optional[EffectiveGroup] = Field(default=None, description="Local rate limiting")
    global_: Optional[EffectiveGroup] = Field(default=None, alias="global", description="Global rate limiting")
    buffering: Optional[Buffering] = Field(default=None, description="Effective response buffering")
    buffering_owners: List[str] = Field(default_factory=list, description="Policies contributing buffering")

    def group(self, group: RateLimitGroup) -> Optional[EffectiveGroup]:
        return self.local if group == RateLimitGroup.LOCAL else self.global_

    @property
    def is_empty(self) -> bool:
        return self.local is None and self.global_ is None and self.buffering is None

    @property
    def sources(self) -> Set[str]:
        found: Set[str] = set(self.buffering_owners)
        for group in (self.local, self.global_):
            if group is not None:
                found |= group.sources
        return found


# ===== Validation Models =====

class ValidationIssue(BaseModel):
    """Validation issue with JSON pointer path."""
    path: str = Field(description="JSON pointer path to issue")
    message: str = Field(description="Human-readable error message")
    severity: Severity = Field(default=Severity.ERROR, description="Issue severity")
    kind: IssueKind = Field(default=IssueKind.SYNTAX, description="Issue class")
    policies: List[str] = Field(default_factory=list, description="Policies the issue is attributed to")
    target: Optional[TargetRef] = Field(default=None, description="Target the issue was found on")
    group: Optional[str] = Field(default=None, description="local, global or buffering")


class AffectedObjectRecord(BaseModel):
    """A target currently governed by at least one policy."""
    target: TargetRef = Field(description="Affected object")
    generation: int = Field(default=0, description="Object generation when last computed")
