"""
Tests for core data models
"""
import pytest
from broker_harness.models import (
    BackoffConfig, BatchSetting, ClusterHandle, ClusterTopology, ConsumerGroupConfig, AckPolicyKind,
    ExpectedModel, NodeHandle, NodeRole, NodeSpec, ObservedModel, ObservedRecord, ProducedRecord,
    Record, RecordId, VerificationResult, Guarantee, DEFAULT_ORDERING_KEY, DISABLED, payload_key
)


def test_topology_start_order():
    """Nodes start by role rank, keeping declaration order within a role"""
    topology = ClusterTopology(nodes=[
        NodeSpec(role=NodeRole.BROKER, name="b1"),
        NodeSpec(role=NodeRole.STORAGE, name="s1"),
        NodeSpec(role=NodeRole.BROKER, name="b2"),
        NodeSpec(role=NodeRole.COORDINATION, name="z1"),
    ])
    assert [spec.name for spec in topology.start_order()] == ["z1", "s1", "b1", "b2"]
    assert [spec.name for spec in topology.brokers()] == ["b1", "b2"]


def test_loopback_topology():
    topology = ClusterTopology.loopback(3, base_data_dir="/tmp/x")
    assert topology.backend == "loopback"
    assert len(topology.brokers()) == 3
    assert topology.base_data_dir == "/tmp/x"


def test_backoff_delays():
    delays = BackoffConfig(initial_delay=0.1, max_delay=0.5, jitter=False).delays()
    assert [next(delays) for _ in range(5)] == pytest.approx([0.1, 0.2, 0.4, 0.5, 0.5])


def test_backoff_jitter_bounds():
    delays = BackoffConfig(initial_delay=1.0, max_delay=1.0, jitter=True).delays()
    for _ in range(20):
        assert 0.5 <= next(delays) <= 1.0


def test_cluster_handle_lookup():
    nodes = [
        NodeHandle("broker-0", NodeRole.BROKER, 0, "127.0.0.1", 6570, None, "/d0", "/l0"),
        NodeHandle("broker-1", NodeRole.BROKER, 1, "127.0.0.1", 6571, None, "/d1", "/l1"),
    ]
    handle = ClusterHandle("run", ClusterTopology.loopback(2), nodes, "/tmp/s", 0.0)

    assert handle.address(NodeRole.BROKER, 1) == "127.0.0.1:6571"
    assert handle.addresses() == ["127.0.0.1:6570", "127.0.0.1:6571"]
    with pytest.raises(KeyError):
        handle.node(NodeRole.STORAGE)


def test_loopback_node_running_until_closed():
    node = NodeHandle("broker-0", NodeRole.BROKER, 0, "127.0.0.1", 6570, None, "/d", "/missing.log")
    assert node.is_running()
    assert node.read_log() == ""
    node.closed = True
    assert not node.is_running()


def test_record_id_ordering():
    assert RecordId(0, 5) < RecordId(1, 0)
    assert RecordId(2, 1) < RecordId(2, 3)
    assert str(RecordId(3, 4)) == "3-4"


def test_record_size_and_key():
    raw = Record(payload=b"abcd")
    assert raw.is_raw and raw.size == 4
    assert raw.key == DEFAULT_ORDERING_KEY

    structured = Record(payload={'b': 1, 'a': 2}, ordering_key="k")
    assert not structured.is_raw
    assert structured.size == len('{"a": 2, "b": 1}')
    assert structured.key == "k"


def test_payload_key_is_canonical():
    assert payload_key({'b': 1, 'a': 2}) == payload_key({'a': 2, 'b': 1})
    assert payload_key(bytearray(b"x")) == b"x"


def test_batch_setting_limits():
    batch = BatchSetting(record_count_limit=10, age_limit_ms=DISABLED, bytes_limit=0)
    assert batch.count_enabled
    assert not batch.age_enabled
    assert not batch.bytes_enabled


def test_expected_model_freeze():
    expected = ExpectedModel(stream="s")
    expected.add(ProducedRecord(0, b"a", "k1", RecordId(0, 0)))
    expected.add(ProducedRecord(1, b"a", "k2", RecordId(0, 1)))
    expected.freeze()

    assert isinstance(expected.records, tuple)
    assert expected.payload_multiset()[b"a"] == 2
    assert set(expected.by_key()) == {"k1", "k2"}
    with pytest.raises(RuntimeError):
        expected.add(ProducedRecord(2, b"b", "k1", RecordId(0, 2)))


def test_observed_model_views():
    a = ObservedRecord(RecordId(0, 0), b"a", "k1", "c1")
    b = ObservedRecord(RecordId(0, 1), b"b", "k1", "c2")
    model = ObservedModel("sub", acked={a.record_id: a, b.record_id: b}, per_member={"c1": [a], "c2": [b]})

    assert len(model) == 2
    assert model.member_counts() == {"c1": 1, "c2": 1}
    assert model.members_by_key() == {"k1": {"c1", "c2"}}
    assert model.member_record_ids("c1") == {RecordId(0, 0)}
    assert model.member_record_ids("ghost") == set()


def test_consumer_group_policy_for():
    config = ConsumerGroupConfig(members=["c1", "c2"], ack_policy=AckPolicyKind.RANDOM_NACK,
                                 member_policies={"c2": AckPolicyKind.SHUFFLE})
    assert config.policy_for("c1") == AckPolicyKind.RANDOM_NACK
    assert config.policy_for("c2") == AckPolicyKind.SHUFFLE


def test_verification_summary():
    result = VerificationResult(Guarantee.SIZE_ONLY, False, 3, 2, message="size differs by -1")
    assert result.summary() == "size_only: FAILED (expected=3, observed=2) - size differs by -1"
