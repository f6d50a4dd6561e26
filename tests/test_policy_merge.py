"""
Unit tests for the policy merge engine.

Tests Gateway/Route inheritance for zones and rules, fail-closed handling
of dangling references and compilation errors, same-level conflicts and
field-by-field buffering inheritance.
"""
import pytest
from conftest import gateway_ref, make_policy, route_ref, zone

from gateway_ratelimit.policy.models import IssueKind, RateLimitGroup, Severity, Zone


class TestGatewayOnly:
    """Test resolution with policies at the Gateway level only."""

    def test_route_inherits_gateway_policy_unchanged(self, engine, gateway_policy):
        """Test the identity merge for Routes without policies."""
        gateway_effective, _ = engine.resolve(gateway_policy)
        route_effective, issues = engine.resolve(gateway_policy, [], route_ref())

        assert issues == []
        assert route_effective == gateway_effective
        assert route_effective.local.zones[0].name == "z1"

    def test_resolve_route_without_policies_returns_gateway_effective(self, engine, gateway_policy):
        """Test that resolve_route reuses the resolved Gateway level."""
        gateway = engine.resolve_gateway([gateway_policy], gateway_ref())
        route = engine.resolve_route(gateway, [], route_ref())
        assert route.effective == gateway.effective
        assert route.issues == []

    def test_no_policies_yields_nothing(self, engine):
        """Test that a target without policies has no effective policy."""
        effective, issues = engine.resolve(None)
        assert effective is None
        assert issues == []

    def test_unused_zones_are_pruned(self, engine):
        """Test that zones no rule references are not rendered."""
        policy = make_policy("p", [gateway_ref()], local={
            "zones": [zone("z1"), zone("spare")],
            "rules": [{"zone_name": "z1"}],
        })
        effective, _ = engine.resolve(policy)
        assert [z.name for z in effective.local.zones] == ["z1"]

    def test_zones_without_rules_only_offer_capacity(self, engine):
        """Test that a zone-only Gateway policy enforces nothing itself."""
        policy = make_policy("p", [gateway_ref()], local={"zones": [zone("z1")]})
        effective, issues = engine.resolve(policy)
        assert effective is None
        assert issues == []


class TestInheritance:
    """Test Gateway/Route precedence."""

    def test_round_trip_scenario(self, engine, gateway_policy, route_policy):
        """Test that the Route rule replaces the Gateway rule and the zone is kept."""
        effective, issues = engine.resolve(gateway_policy, [route_policy], route_ref())

        assert issues == []
        local = effective.local
        assert local.zones == [Zone(name="z1", rate="5r/s", key="$binary_remote_addr", size="10m")]
        assert len(local.rules) == 1
        rule = local.rules[0]
        assert rule.burst == 2
        assert rule.condition.name == "$request_method"
        assert rule.condition.match == "GET"
        assert all(group.default is None for group in local.decisions.groups)
        assert local.rule_owners == {"z1": "default/api-limits"}
        assert local.zone_owners == {"z1": "default/platform-limits"}

    @pytest.mark.parametrize("route_first", [False, True])
    def test_gateway_zone_wins(self, engine, gateway_policy, route_first):
        """Test that the Gateway definition of a zone wins regardless of order."""
        route_policy = make_policy("resize", [route_ref()], local={
            "zones": [zone("z1", rate="500r/s", size="1m")],
            "rules": [{"zone_name": "z1", "burst": 1}],
        }, age=20 if route_first else 0)

        effective, issues = engine.resolve(gateway_policy, [route_policy], route_ref())

        assert issues == []
        assert effective.local.zones[0].rate == "5r/s"
        assert effective.local.zones[0].size == "10m"
        assert effective.local.rules[0].burst == 1

    def test_route_zone_added(self, engine, gateway_policy):
        """Test that a zone defined only at Route level is used unmodified."""
        route_policy = make_policy("extra", [route_ref()], local={
            "zones": [zone("z2", rate="1r/s")],
            "rules": [{"zone_name": "z2"}],
        })
        effective, _ = engine.resolve(gateway_policy, [route_policy], route_ref())

        assert [z.name for z in effective.local.zones] == ["z1", "z2"]
        assert sorted(r.zone_name for r in effective.local.rules) == ["z1", "z2"]

    def test_groups_merge_independently(self, engine, gateway_policy):
        """Test that a Route global block does not touch the local group."""
        route_policy = make_policy("global-only", [route_ref()], global_={
            "zones": [zone("g1")],
            "rules": [{"zone_name": "g1"}],
        })
        effective, _ = engine.resolve(gateway_policy, [route_policy], route_ref())

        assert effective.local.rules[0].burst == 5
        assert effective.group(RateLimitGroup.GLOBAL).zones[0].name == "g1"
        assert effective.sources == {"default/platform-limits", "default/global-only"}


class TestFailClosed:
    """Test that invalid groups are dropped, not partially applied."""

    def test_dangling_zone_reference(self, engine):
        """Test that a rule referencing an unknown zone drops the group."""
        route_policy = make_policy("dangling", [route_ref()], local={"rules": [{"zone_name": "missing"}]})
        effective, issues = engine.resolve(None, [route_policy], route_ref())

        assert effective is None
        assert len(issues) == 1
        assert issues[0].kind == IssueKind.CONFLICT
        assert "missing" in issues[0].message
        assert issues[0].policies == ["default/dangling"]
        assert issues[0].target == route_ref()

    def test_multiple_defaults_after_merge(self, engine):
        """Test that a default conflict created by merging drops only that group."""
        gateway = make_policy("gw", [gateway_ref()], local={
            "zones": [zone("a"), zone("b")],
            "rules": [{"zone_name": "a", "condition": {"jwt": {"claim": "tier", "match": "x"}, "default": True}}],
        }, global_={"zones": [zone("g")], "rules": [{"zone_name": "g"}]}, age=5)
        route = make_policy("rt", [route_ref()], local={
            "rules": [{"zone_name": "b", "condition": {"jwt": {"claim": "tier", "match": "y"}, "default": True}}],
        })

        effective, issues = engine.resolve(gateway, [route], route_ref())

        assert effective.local is None
        assert effective.global_ is not None
        assert any(i.group == "local" and "default" in i.message for i in issues)
        conflict = next(i for i in issues if i.group == "local")
        assert conflict.policies == ["default/gw", "default/rt"]


class TestSameLevelConflicts:
    """Test collisions between policies attached at the same level."""

    def test_differing_zone_definitions_conflict(self, engine):
        """Test that two policies defining a zone differently drop the group."""
        first = make_policy("first", [gateway_ref()], local={"zones": [zone("z1")], "rules": [{"zone_name": "z1"}]})
        second = make_policy("second", [gateway_ref()], local={"zones": [zone("z1", rate="9r/s")]})

        level = engine.resolve_gateway([first, second], gateway_ref())

        assert level.effective is None
        assert level.issues[0].kind == IssueKind.CONFLICT
        assert level.issues[0].policies == ["default/first", "default/second"]

    def test_identical_definitions_do_not_conflict(self, engine):
        """Test that identical zone definitions are shared."""
        first = make_policy("first", [gateway_ref()], local={"zones": [zone("z1")], "rules": [{"zone_name": "z1"}]})
        second = make_policy("second", [gateway_ref()], local={"zones": [zone("z1")]})

        level = engine.resolve_gateway([first, second], gateway_ref())

        assert level.issues == []
        assert level.effective.local.zone_owners == {"z1": "default/first"}

    def test_older_policy_owns_shared_zone(self, engine):
        """Test that ownership goes to the oldest policy."""
        newer = make_policy("a-newer", [gateway_ref()], local={"zones": [zone("z1")], "rules": [{"zone_name": "z1"}]})
        older = make_policy("b-older", [gateway_ref()], local={"zones": [zone("z1")]}, age=30)

        level = engine.resolve_gateway([newer, older], gateway_ref())

        assert level.effective.local.zone_owners == {"z1": "default/b-older"}

    def test_failed_gateway_group_is_reported_on_routes(self, engine):
        """Test that Routes inheriting a conflicted group drop it too."""
        first = make_policy("first", [gateway_ref()], local={"zones": [zone("z1")], "rules": [{"zone_name": "z1"}]})
        second = make_policy("second", [gateway_ref()], local={"zones": [zone("z1", size="1m")]})
        route = make_policy("rt", [route_ref()], local={"rules": [{"zone_name": "z1", "burst": 3}]})

        gateway = engine.resolve_gateway([first, second], gateway_ref())
        resolved = engine.resolve_route(gateway, [route], route_ref())

        assert resolved.effective is None
        assert any("inherited from the Gateway" in i.message for i in resolved.issues)


class TestBuffering:
    """Test field-by-field buffering inheritance."""

    def test_child_overrides_fields(self, engine):
        """Test that set child fields override the parent."""
        gateway = make_policy("gw", [gateway_ref()], buffering={"buffer_size": "4k", "buffers": {"number": 8, "size": "4k"}})
        route = make_policy("rt", [route_ref()], buffering={"buffer_size": "8k"})

        effective, issues = engine.resolve(gateway, [route], route_ref())

        assert issues == []
        assert effective.buffering.buffer_size == "8k"
        assert effective.buffering.buffers.number == 8
        assert effective.buffering_owners == ["default/gw", "default/rt"]

    def test_sizing_under_inherited_disable_is_partial(self, engine):
        """Test that sizing fields under an inherited disable are ignored and reported."""
        gateway = make_policy("gw", [gateway_ref()], buffering={"disable": True})
        route = make_policy("rt", [route_ref()], buffering={"buffer_size": "8k"})

        effective, issues = engine.resolve(gateway, [route], route_ref())

        assert effective.buffering.disable is True
        assert effective.buffering.buffer_size is None
        assert len(issues) == 1
        assert issues[0].kind == IssueKind.PARTIAL
        assert issues[0].severity == Severity.WARN
        assert issues[0].policies == ["default/rt"]
        assert "buffer_size" in issues[0].message

    def test_reenable_keeps_child_sizing(self, engine):
        """Test that disable: false re-enables buffering with the child sizing."""
        gateway = make_policy("gw", [gateway_ref()], buffering={"disable": True})
        route = make_policy("rt", [route_ref()], buffering={"disable": False, "buffer_size": "8k"})

        effective, issues = engine.resolve(gateway, [route], route_ref())

        assert issues == []
        assert effective.buffering.disable is False
        assert effective.buffering.buffer_size == "8k"

    def test_busy_buffers_bound(self, engine):
        """Test that busy_buffers_size must leave one buffer free."""
        policy = make_policy("gw", [gateway_ref()], buffering={
            "buffers": {"number": 2, "size": "4k"},
            "busy_buffers_size": "16k",
        })

        effective, issues = engine.resolve(policy)

        assert effective is None
        assert "busy_buffers_size" in issues[0].message

    def test_same_level_disable_with_sizing_is_partial(self, engine):
        """Test that a same-level disable ignores sizing from a sibling policy and reports it."""
        disabling = make_policy("a", [gateway_ref()], buffering={"disable": True}, age=5)
        sizing = make_policy("b", [gateway_ref()], buffering={"buffer_size": "8k"})

        resolved = engine.resolve_gateway([disabling, sizing], gateway_ref())

        assert resolved.effective.buffering.disable is True
        assert resolved.effective.buffering.buffer_size is None
        assert resolved.effective.buffering_owners == ["default/a"]
        assert len(resolved.issues) == 1
        assert resolved.issues[0].kind == IssueKind.PARTIAL
        assert resolved.issues[0].severity == Severity.WARN
        assert resolved.issues[0].policies == ["default/b"]
        assert "default/a" in resolved.issues[0].message

    def test_invalid_size_is_reported_not_raised(self, engine):
        """Test that an unparseable size drops buffering with a syntax issue."""
        policy = make_policy("gw", [gateway_ref()], buffering={
            "buffers": {"number": 4, "size": "4x"},
            "busy_buffers_size": "8k",
        })

        effective, issues = engine.resolve(policy)

        assert effective is None
        assert len(issues) == 1
        assert issues[0].kind == IssueKind.SYNTAX
        assert issues[0].path == "/buffering/buffers/size"
        assert issues[0].policies == ["default/gw"]
        assert "must be a size" in issues[0].message
