"""
Tests for the resolution orchestrator.

Tests full reconciliation passes: per-target resolutions, policy conditions,
sibling Route conflicts, and status written on commit.
"""
import pytest
from conftest import gateway_ref, make_policy, route_ref, zone

from gateway_ratelimit.config import Settings
from gateway_ratelimit.orchestrator import ResolutionOrchestrator
from gateway_ratelimit.policy.models import Gateway, IssueKind, Route, Severity
from gateway_ratelimit.status import conditions
from gateway_ratelimit.targets.snapshot import StaticSnapshotProvider


class TestResolveAll:
    """Test a single side-effect free pass."""

    def test_gateway_only_attachment(self, orchestrator, gateway, routes, gateway_policy):
        """Test that every Route under the Gateway inherits its policy."""
        result = orchestrator.resolve_all([gateway], routes, [gateway_policy])

        gw = result.for_target(gateway_ref())
        assert gw.accepted and gw.programmed
        for route in routes:
            resolution = result.for_target(route.ref, gateway_ref())
            assert resolution.effective_policy == gw.effective_policy
            assert resolution.generation == route.generation

        assert {r.target for r in result.affected} == {gateway_ref(), route_ref(), route_ref("rpc", kind="GRPCRoute")}

    def test_round_trip(self, orchestrator, gateway, routes, gateway_policy, route_policy):
        """Test the Route override while the sibling keeps the Gateway rule."""
        result = orchestrator.resolve_all([gateway], routes, [gateway_policy, route_policy])

        api = result.for_target(route_ref()).effective_policy.local
        rpc = result.for_target(route_ref("rpc", kind="GRPCRoute")).effective_policy.local
        assert api.rules[0].burst == 2
        assert api.rules[0].condition.match == "GET"
        assert rpc.rules[0].burst == 5
        assert rpc.rules[0].condition is None

    def test_inputs_are_not_mutated(self, orchestrator, gateway, routes, gateway_policy):
        """Test that the pass works on a copy of its inputs."""
        before = gateway_policy.model_dump()
        orchestrator.resolve_all([gateway], routes, [gateway_policy])
        assert gateway_policy.model_dump() == before

    def test_resolve_all_has_no_side_effects(self, orchestrator, tracker, gateway, routes, gateway_policy):
        """Test that nothing is committed before commit()."""
        orchestrator.resolve_all([gateway], routes, [gateway_policy])
        assert len(tracker) == 0

    def test_policy_status_accepted(self, orchestrator, gateway, routes, gateway_policy, route_policy):
        """Test Accepted and Programmed for valid policies."""
        result = orchestrator.resolve_all([gateway], routes, [gateway_policy, route_policy])

        for key in ("default/platform-limits", "default/api-limits"):
            status = result.policy_status(key)
            assert status.condition(conditions.ACCEPTED).status is True
            assert status.condition(conditions.PROGRAMMED).reason == conditions.REASON_PROGRAMMED

    def test_invalid_policy_does_not_block_others(self, orchestrator, gateway, routes, gateway_policy):
        """Test that a policy with syntax errors is rejected alone."""
        broken = make_policy("broken", [route_ref()], local={
            "zones": [zone(rate="lots")], "rules": [{"zone_name": "z1"}],
        })
        result = orchestrator.resolve_all([gateway], routes, [gateway_policy, broken])

        status = result.policy_status("default/broken")
        assert status.condition(conditions.ACCEPTED).status is False
        assert status.condition(conditions.ACCEPTED).reason == conditions.REASON_INVALID
        assert "/local/zones/0/rate" in status.condition(conditions.ACCEPTED).message
        assert result.for_target(route_ref()).effective_policy.local.rules[0].burst == 5

    def test_target_not_found(self, orchestrator, gateway, routes):
        """Test that a policy whose targets do not exist is reported."""
        policy = make_policy("orphan", [gateway_ref("missing")], local={
            "zones": [zone()], "rules": [{"zone_name": "z1"}],
        })
        result = orchestrator.resolve_all([gateway], routes, [policy])

        accepted = result.policy_status("default/orphan").condition(conditions.ACCEPTED)
        assert accepted.reason == conditions.REASON_TARGET_NOT_FOUND
        assert "Gateway/default/missing" in accepted.message

    def test_conflicted_policy(self, orchestrator, gateway, routes):
        """Test that a policy only reaching targets through dropped groups is Conflicted."""
        policy = make_policy("dangling", [route_ref()], local={"rules": [{"zone_name": "nowhere"}]})
        result = orchestrator.resolve_all([gateway], routes, [policy])

        accepted = result.policy_status("default/dangling").condition(conditions.ACCEPTED)
        assert accepted.status is False
        assert accepted.reason == conditions.REASON_CONFLICTED
        resolution = result.for_target(route_ref())
        assert not resolution.accepted
        assert resolution.validation_errors[0].kind == IssueKind.CONFLICT

    def test_partially_invalid(self, orchestrator, gateway, routes):
        """Test PartiallyInvalid for sizing under an inherited disable."""
        gw = make_policy("gw", [gateway_ref()], buffering={"disable": True}, age=5)
        rt = make_policy("rt", [route_ref()], buffering={"buffer_size": "8k"})
        result = orchestrator.resolve_all([gateway], routes, [gw, rt])

        programmed = result.policy_status("default/rt").condition(conditions.PROGRAMMED)
        assert programmed.status is False
        assert programmed.reason == conditions.REASON_PARTIALLY_INVALID
        assert result.policy_status("default/rt").condition(conditions.ACCEPTED).status is True

        resolution = result.for_target(route_ref())
        assert resolution.accepted
        assert not resolution.programmed
        assert resolution.effective_policy.buffering.disable is True

    def test_route_without_parent_uses_own_policies(self, orchestrator):
        """Test that a Route whose Gateway is unknown resolves on its own."""
        route = Route(name="api", parent_refs=["ghost"])
        standalone = make_policy("standalone", [route_ref()], local={
            "zones": [zone("own")], "rules": [{"zone_name": "own"}],
        })
        result = orchestrator.resolve_all([], [route], [standalone])

        resolution = result.for_target(route_ref())
        assert resolution.ancestor is None
        assert resolution.effective_policy.local.zones[0].name == "own"


class TestSiblingZoneConflicts:
    """Test Route-level zones colliding across sibling Routes."""

    @pytest.fixture
    def sibling_policies(self):
        return [
            make_policy("api-zone", [route_ref()], local={
                "zones": [zone("shared", rate="10r/s")], "rules": [{"zone_name": "shared"}],
            }),
            make_policy("rpc-zone", [route_ref("rpc", kind="GRPCRoute")], local={
                "zones": [zone("shared", rate="20r/s")], "rules": [{"zone_name": "shared"}],
            }),
        ]

    def test_conflict_drops_group(self, orchestrator, gateway, routes, sibling_policies):
        """Test that differing sibling definitions drop the group on both Routes."""
        result = orchestrator.resolve_all([gateway], routes, sibling_policies)

        for target in (route_ref(), route_ref("rpc", kind="GRPCRoute")):
            resolution = result.for_target(target)
            assert resolution.effective_policy is None
            assert resolution.validation_errors[0].kind == IssueKind.CONFLICT
            assert resolution.validation_errors[0].policies == ["default/api-zone", "default/rpc-zone"]
        assert result.policy_status("default/api-zone").condition(conditions.ACCEPTED).reason == \
            conditions.REASON_CONFLICTED

    def test_warn_mode_keeps_both(self, tracker, gateway, routes, sibling_policies):
        """Test that warn mode reports the collision but keeps both definitions."""
        orchestrator = ResolutionOrchestrator(
            tracker=tracker, settings=Settings(_env_file=None, SIBLING_ZONE_CONFLICTS="warn"),
        )
        result = orchestrator.resolve_all([gateway], routes, sibling_policies)

        api = result.for_target(route_ref())
        assert api.effective_policy.local.zones[0].rate == "10r/s"
        assert api.validation_errors[0].severity == Severity.WARN
        assert api.programmed

    def test_gateway_definition_prevents_conflict(self, orchestrator, gateway, routes, sibling_policies):
        """Test that a Gateway-defined zone is authoritative for all siblings."""
        gw = make_policy("gw", [gateway_ref()], local={"zones": [zone("shared", rate="1r/s")]}, age=5)
        result = orchestrator.resolve_all([gateway], routes, [gw] + sibling_policies)

        for target in (route_ref(), route_ref("rpc", kind="GRPCRoute")):
            resolution = result.for_target(target)
            assert resolution.validation_errors == []
            assert resolution.effective_policy.local.zones[0].rate == "1r/s"


class TestCommit:
    """Test the side effects of committing a pass."""

    def test_commit_writes_affected_and_policy_status(self, orchestrator, writer, gateway, routes, gateway_policy):
        """Test affected transitions and policy conditions on commit."""
        result = orchestrator.resolve_all([gateway], routes, [gateway_policy])
        delta = orchestrator.commit(result, writer)

        assert len(delta.added) == 3
        affected = writer.latest(route_ref(), conditions.POLICY_AFFECTED)
        assert affected.status is True
        assert affected.reason == conditions.REASON_POLICY_AFFECTED
        assert affected.observed_generation == 7

        policy_status = writer.latest(gateway_policy.ref, conditions.ACCEPTED)
        assert policy_status.status is True
        assert policy_status.observed_generation == gateway_policy.generation

    def test_removal_transitions_once(self, orchestrator, writer, gateway, routes):
        """Test that a target attached by two policies is un-affected exactly once."""
        first = make_policy("first", [route_ref()], local={"zones": [zone("a")], "rules": [{"zone_name": "a"}]})
        second = make_policy("second", [route_ref()], local={"zones": [zone("b")], "rules": [{"zone_name": "b"}]})

        orchestrator.reconcile(StaticSnapshotProvider([gateway], routes, [first, second]).snapshot(), writer)
        orchestrator.reconcile(StaticSnapshotProvider([gateway], routes, [first]).snapshot(), writer)
        orchestrator.reconcile(StaticSnapshotProvider([gateway], routes, []).snapshot(), writer)
        orchestrator.reconcile(StaticSnapshotProvider([gateway], routes, []).snapshot(), writer)

        transitions = [(u.status, u.reason) for u in writer.for_target(route_ref())
                       if u.condition_type == conditions.POLICY_AFFECTED]
        assert transitions == [
            (True, conditions.REASON_POLICY_AFFECTED),
            (False, conditions.REASON_POLICY_NOT_AFFECTED),
        ]
        assert len(orchestrator.tracker) == 0

    def test_generation_change_is_rewritten(self, orchestrator, writer, routes, gateway_policy):
        """Test that a new object generation refreshes the affected condition."""
        orchestrator.reconcile(StaticSnapshotProvider([Gateway(name="edge", generation=1)], routes,
                                                      [gateway_policy]).snapshot(), writer)
        orchestrator.reconcile(StaticSnapshotProvider([Gateway(name="edge", generation=2)], routes,
                                                      [gateway_policy]).snapshot(), writer)

        updates = [u for u in writer.for_target(gateway_ref()) if u.condition_type == conditions.POLICY_AFFECTED]
        assert [u.observed_generation for u in updates] == [1, 2]

    def test_abandoned_pass_needs_no_rollback(self, orchestrator, gateway, routes, gateway_policy):
        """Test that an uncommitted result leaves the tracker untouched."""
        orchestrator.commit(orchestrator.resolve_all([gateway], routes, [gateway_policy]))
        orchestrator.resolve_all([gateway], routes, [])

        assert orchestrator.tracker.is_affected(gateway_ref())
