from datetime import datetime, timedelta, timezone

import pytest
from click.testing import CliRunner

from gateway_ratelimit.config import Settings
from gateway_ratelimit.orchestrator import ResolutionOrchestrator
from gateway_ratelimit.policy.merge import MergeEngine
from gateway_ratelimit.policy.models import Gateway, Policy, Route, TargetRef
from gateway_ratelimit.status.conditions import RecordingStatusWriter
from gateway_ratelimit.status.tracker import AffectedObjectTracker

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def gateway_ref(name="edge", namespace="default"):
    return TargetRef(kind="Gateway", name=name, namespace=namespace)


def route_ref(name="api", namespace="default", kind="HTTPRoute"):
    return TargetRef(kind=kind, name=name, namespace=namespace)


def make_policy(name, targets, local=None, global_=None, buffering=None, age=0, namespace="default", generation=1):
    """Build a policy; a larger age means an older policy."""
    data = {
        "namespace": namespace,
        "name": name,
        "generation": generation,
        "creation_timestamp": BASE_TIME - timedelta(minutes=age),
        "target_refs": [{"kind": ref.kind, "name": ref.name} for ref in targets],
    }
    if local is not None:
        data["local"] = local
    if global_ is not None:
        data["global"] = global_
    if buffering is not None:
        data["buffering"] = buffering
    return Policy.model_validate(data)


def zone(name="z1", rate="5r/s", key="$binary_remote_addr", size="10m"):
    return {"name": name, "rate": rate, "key": key, "size": size}


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def engine():
    return MergeEngine()


@pytest.fixture
def tracker():
    return AffectedObjectTracker()


@pytest.fixture
def writer():
    return RecordingStatusWriter()


@pytest.fixture
def orchestrator(tracker, settings):
    return ResolutionOrchestrator(tracker=tracker, settings=settings)


@pytest.fixture
def gateway():
    return Gateway(name="edge", generation=3)


@pytest.fixture
def routes():
    return [
        Route(name="api", generation=7, parent_refs=["edge"]),
        Route(kind="GRPCRoute", name="rpc", generation=2, parent_refs=["edge"]),
    ]


@pytest.fixture
def gateway_policy():
    return make_policy(
        "platform-limits",
        [gateway_ref()],
        local={"zones": [zone()], "rules": [{"zone_name": "z1", "burst": 5}]},
        age=10,
    )


@pytest.fixture
def route_policy():
    return make_policy(
        "api-limits",
        [route_ref()],
        local={"rules": [{
            "zone_name": "z1",
            "burst": 2,
            "condition": {"variable": {"name": "$request_method", "match": "GET"}},
        }]},
    )


SNAPSHOT_YAML = """
gateways:
  - {namespace: default, name: edge, generation: 3}
routes:
  - {kind: HTTPRoute, namespace: default, name: api, generation: 7, parent_refs: [edge]}
policies:
  - namespace: default
    name: platform-limits
    target_refs: [{kind: Gateway, name: edge}]
    local:
      zones: [{name: z1, rate: 5r/s, key: $binary_remote_addr, size: 10m}]
      rules: [{zone_name: z1, burst: 5}]
  - namespace: default
    name: api-limits
    target_refs: [{kind: HTTPRoute, name: api}]
    local:
      rules:
        - zone_name: z1
          burst: 2
          condition: {variable: {name: $request_method, match: GET}}
"""


@pytest.fixture
def snapshot_file(tmp_path):
    path = tmp_path / "snapshot.yaml"
    path.write_text(SNAPSHOT_YAML)
    return path
