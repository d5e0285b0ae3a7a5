import pytest

from chainctl.modules.errors import ConfigurationError, UpgradeError
from chainctl.modules.models import (
    ActivationKind,
    ActivationPoint,
    AwaitCondition,
    ChainSnapshot,
    ConditionKind,
    FleetRoster,
    SourcePolicy,
    UpgradePhase,
    UpgradePlan,
    UpgradeRecord,
)
from chainctl.modules.settings import NetworkSettings


def snapshot(height, era=0, node_id="node-1"):
    return ChainSnapshot(node_id=node_id, height=height, era=era, state_root_hash=None, peer_count=0)


def test_activation_point_parse():
    assert ActivationPoint.parse("height:200") == ActivationPoint(ActivationKind.HEIGHT, 200)
    assert ActivationPoint.parse("era:7") == ActivationPoint(ActivationKind.ERA, 7)
    assert ActivationPoint.parse("7") == ActivationPoint(ActivationKind.ERA, 7)
    assert str(ActivationPoint.parse("HEIGHT:5")) == "height:5"


@pytest.mark.parametrize("text", ["block:5", "height:", "era:x", ""])
def test_activation_point_parse_rejects_garbage(text):
    with pytest.raises(ConfigurationError):
        ActivationPoint.parse(text)


def test_activation_point_reached_by():
    point = ActivationPoint(ActivationKind.HEIGHT, 200)
    assert not point.reached_by(snapshot(199))
    assert point.reached_by(snapshot(200))
    assert ActivationPoint(ActivationKind.ERA, 3).reached_by(snapshot(10, era=3))


def test_await_condition_rejects_bad_parameters():
    with pytest.raises(ConfigurationError):
        AwaitCondition(kind=ConditionKind.HEIGHT_AT_LEAST, interval=0)
    with pytest.raises(ConfigurationError):
        AwaitCondition(kind=ConditionKind.HEIGHT_AT_LEAST, timeout=-1)
    with pytest.raises(ConfigurationError):
        AwaitCondition(kind=ConditionKind.HEIGHT_AT_LEAST, policy=SourcePolicy.PINNED)
    with pytest.raises(ConfigurationError):
        AwaitCondition(kind=ConditionKind.CUSTOM)


def test_await_condition_predicates():
    advanced = AwaitCondition(kind=ConditionKind.HEIGHT_ADVANCED, target=10)
    assert advanced.needs_baseline
    assert not advanced.satisfied_by(snapshot(109), snapshot(100))
    assert advanced.satisfied_by(snapshot(110), snapshot(100))
    assert not advanced.satisfied_by(snapshot(110), None)

    eras = AwaitCondition(kind=ConditionKind.ERA_ADVANCED, target=2)
    assert eras.satisfied_by(snapshot(0, era=5), snapshot(0, era=3))

    custom = AwaitCondition(kind=ConditionKind.CUSTOM, predicate=lambda s: s.height % 2 == 0)
    assert custom.satisfied_by(snapshot(4))
    assert custom.describe() == "custom condition"


def test_roster_suspend_keeps_membership():
    roster = FleetRoster(admitted=["node-1", "node-2", "node-3"])
    roster.suspend("node-2")
    assert len(roster) == 3
    assert "node-2" in roster
    assert roster.active() == ["node-1", "node-3"]
    roster.resume("node-2")
    assert roster.active() == ["node-1", "node-2", "node-3"]

    roster.evict("node-1")
    assert roster.to_dict() == {'admitted': ["node-2", "node-3"], 'suspended': []}
    assert FleetRoster.from_dict(roster.to_dict()).admitted == ["node-2", "node-3"]


def test_upgrade_record_transitions():
    point = ActivationPoint(ActivationKind.HEIGHT, 200)
    record = UpgradeRecord(plan=UpgradePlan(version="2.0.0", activation_point=point))
    with pytest.raises(UpgradeError) as exc:
        record.transition(UpgradePhase.ACTIVATING)
    assert exc.value.reason == UpgradeError.INVALID_TRANSITION

    record.transition(UpgradePhase.STAGED)
    record.transition(UpgradePhase.ACTIVATING)
    record.fail(RuntimeError("boom"))
    assert record.phase == UpgradePhase.FAILED
    assert record.error == "boom"
    assert [p for p, _ in record.history] == ["planned", "staged", "activating", "failed"]

    with pytest.raises(UpgradeError):
        record.transition(UpgradePhase.COMPLETE)


def test_emergency_plan_may_skip_staging():
    record = UpgradeRecord(plan=UpgradePlan(version="2.0.0", activation_point=None, emergency=True))
    record.transition(UpgradePhase.ACTIVATING)
    assert record.to_dict()['activation_point'] is None


def test_network_settings_validation():
    settings = NetworkSettings(node_count=5, min_nodes=3)
    assert settings.port_ranges()['rpc'] == (11100, 11110)

    for bad in (
        {'node_count': 0},
        {'node_count': 2, 'min_nodes': 3},
        {'node_count': 5, 'max_nodes': 4},
        {'base_rpc_port': 34005},
        {'base_rest_port': 65530},
        {'unknown_key': 1},
    ):
        with pytest.raises(ConfigurationError):
            NetworkSettings.from_dict(bad)
