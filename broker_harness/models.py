"""
Core data models for the broker verification harness
"""
import json
import time
import random
import subprocess
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Any, Optional, Set, Tuple, Union
from enum import Enum


DISABLED = -1
DEFAULT_ORDERING_KEY = "__default__"
MAX_RECORD_SIZE = 1024 * 1024


class NodeRole(Enum):
    """Roles a cluster node can play, in dependency order"""
    COORDINATION = "coordination"
    STORAGE = "storage"
    BROKER = "broker"


ROLE_START_RANK = {
    NodeRole.COORDINATION: 0,
    NodeRole.STORAGE: 1,
    NodeRole.BROKER: 2,
}


@dataclass
class NodeSpec:
    """Static definition of a single node before it's started"""
    role: NodeRole
    host: str = "127.0.0.1"
    port: int = 0  # 0 means allocate from the topology's base port
    internal_port: Optional[int] = None
    data_dir: Optional[str] = None
    command: List[str] = field(default_factory=list)
    name: Optional[str] = None
    ready_timeout: float = 30.0


@dataclass
class ClusterTopology:
    """Static definition of a cluster: node roles, addresses and scratch storage"""
    nodes: List[NodeSpec]
    base_data_dir: str = "/tmp/broker-harness"
    log_dir: str = "/tmp/broker-harness/logs"
    backend: str = "process"  # "process" or "loopback"
    client_factory: Optional[str] = None
    base_port: int = 6570
    enable_cleanup: bool = True
    stop_timeout: float = 5.0
    max_record_size: int = MAX_RECORD_SIZE

    def start_order(self) -> List[NodeSpec]:
        """Nodes sorted by role rank, keeping declaration order within a role"""
        indexed = list(enumerate(self.nodes))
        indexed.sort(key=lambda item: (ROLE_START_RANK[item[1].role], item[0]))
        return [spec for _, spec in indexed]

    def brokers(self) -> List[NodeSpec]:
        return [spec for spec in self.nodes if spec.role == NodeRole.BROKER]

    @classmethod
    def loopback(cls, num_brokers: int = 3, **kwargs) -> "ClusterTopology":
        """Topology served by the in-process loopback broker"""
        nodes = [NodeSpec(role=NodeRole.BROKER, port=6570 + i) for i in range(num_brokers)]
        return cls(nodes=nodes, backend="loopback", **kwargs)


@dataclass
class BackoffConfig:
    """Readiness poll timing: exponential backoff between connection attempts"""
    initial_delay: float = 0.05
    max_delay: float = 1.0
    exponential_base: float = 2.0
    jitter: bool = True

    def delays(self) -> Iterator[float]:
        attempt = 0
        while True:
            delay = min(self.initial_delay * (self.exponential_base ** attempt), self.max_delay)
            if self.jitter:
                delay *= (0.5 + random.random() / 2)
            yield delay
            attempt += 1


@dataclass
class NodeHandle:
    """Running node owned by the orchestrator, from successful start to close"""
    name: str
    role: NodeRole
    index: int
    host: str
    port: int
    internal_port: Optional[int]
    data_dir: str
    log_file: str
    command: List[str] = field(default_factory=list)
    process: Optional[subprocess.Popen] = None
    pid: Optional[int] = None
    start_time: float = 0.0
    closed: bool = False

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def is_running(self) -> bool:
        if self.closed:
            return False
        if self.process is None:
            # Loopback nodes have no process and live until closed
            return True
        return self.process.poll() is None

    def read_log(self) -> str:
        """Return everything the node has written to its captured output so far"""
        try:
            with open(self.log_file, 'r', errors='replace') as f:
                return f.read()
        except FileNotFoundError:
            return ""


@dataclass
class ClusterHandle:
    """A started cluster, as exposed to workload and consumption code"""
    run_id: str
    topology: ClusterTopology
    nodes: List[NodeHandle]
    scratch_dir: str
    creation_time: float
    test_name: str = "harness"
    is_ready: bool = False
    loopback: Optional[Any] = None
    persisted_logs: Dict[str, str] = field(default_factory=dict)

    def nodes_by_role(self, role: NodeRole) -> List[NodeHandle]:
        return [node for node in self.nodes if node.role == role]

    def node(self, role: NodeRole, index: int = 0) -> NodeHandle:
        candidates = self.nodes_by_role(role)
        if index < 0 or index >= len(candidates):
            raise KeyError(f"No {role.value} node with index {index} (have {len(candidates)})")
        return candidates[index]

    def address(self, role: NodeRole, index: int = 0) -> str:
        return self.node(role, index).address

    def addresses(self, role: NodeRole = NodeRole.BROKER) -> List[str]:
        return [node.address for node in self.nodes_by_role(role)]


@dataclass(frozen=True, order=True)
class RecordId:
    """Broker-assigned record identifier, ordered by write position"""
    batch_id: int
    batch_index: int

    def __str__(self) -> str:
        return f"{self.batch_id}-{self.batch_index}"


@dataclass
class Record:
    """A record to produce: raw bytes or a structured key/value payload"""
    payload: Union[bytes, Dict[str, Any]]
    ordering_key: Optional[str] = None

    @property
    def is_raw(self) -> bool:
        return isinstance(self.payload, (bytes, bytearray))

    @property
    def size(self) -> int:
        if self.is_raw:
            return len(self.payload)
        return len(json.dumps(self.payload, sort_keys=True).encode())

    @property
    def key(self) -> str:
        return self.ordering_key if self.ordering_key is not None else DEFAULT_ORDERING_KEY


def payload_key(payload: Union[bytes, Dict[str, Any]]) -> Union[bytes, str]:
    """Canonical hashable form of a payload, used for multiset comparison"""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return json.dumps(payload, sort_keys=True)


@dataclass(frozen=True)
class Delivery:
    """A record handed to one consumer-group member"""
    subscription_id: str
    member: str
    record_id: Any
    record: Record
    delivery_count: int = 1

    @property
    def is_redelivery(self) -> bool:
        return self.delivery_count > 1


@dataclass
class SubscriptionSpec:
    """A durable cursor over a stream"""
    subscription_id: str
    stream: str
    ack_timeout: float = 60.0


@dataclass
class BatchSetting:
    """Flush limits for a buffered producer; any value <= 0 disables a limit"""
    record_count_limit: int = 100
    age_limit_ms: int = 100
    bytes_limit: int = DISABLED

    @property
    def count_enabled(self) -> bool:
        return self.record_count_limit > 0

    @property
    def age_enabled(self) -> bool:
        return self.age_limit_ms > 0

    @property
    def bytes_enabled(self) -> bool:
        return self.bytes_limit > 0


class Discipline(Enum):
    """Production disciplines supported by the workload generator"""
    DIRECT = "direct"
    BATCHED = "batched"
    CONCURRENT = "concurrent"
    MIXED = "mixed"


class PayloadKind(Enum):
    RAW = "raw"
    JSON = "json"
    MIXED = "mixed"
    TINY = "tiny"


@dataclass
class PayloadShape:
    """What each produced payload looks like"""
    kind: PayloadKind = PayloadKind.RAW
    size: int = 128
    ordering_keys: Optional[List[str]] = None


@dataclass
class WorkloadConfig:
    """Configuration for workload generation"""
    discipline: Discipline = Discipline.BATCHED
    count: int = 100
    payload: PayloadShape = field(default_factory=PayloadShape)
    batch: BatchSetting = field(default_factory=BatchSetting)
    producers: int = 2
    write_timeout: float = 30.0
    seed: Optional[int] = None


@dataclass(frozen=True)
class ProducedRecord:
    """A write acknowledged by the broker"""
    index: int
    payload_key: Union[bytes, str]
    ordering_key: str
    record_id: Any


@dataclass
class ExpectedModel:
    """What the workload generator produced; frozen once production completes"""
    stream: str
    records: Union[List[ProducedRecord], Tuple[ProducedRecord, ...]] = field(default_factory=list)
    frozen: bool = False

    def add(self, produced: ProducedRecord) -> None:
        if self.frozen:
            raise RuntimeError(f"Expected model for {self.stream} is frozen")
        self.records.append(produced)

    def freeze(self) -> "ExpectedModel":
        self.records = tuple(self.records)
        self.frozen = True
        return self

    def __len__(self) -> int:
        return len(self.records)

    def payload_multiset(self) -> Counter:
        return Counter(r.payload_key for r in self.records)

    def payload_sequence(self) -> List[Union[bytes, str]]:
        return [r.payload_key for r in self.records]

    def record_ids(self) -> Set[Any]:
        return {r.record_id for r in self.records}

    def by_key(self) -> Dict[str, List[ProducedRecord]]:
        grouped: Dict[str, List[ProducedRecord]] = defaultdict(list)
        for r in self.records:
            grouped[r.ordering_key].append(r)
        return dict(grouped)


@dataclass(frozen=True)
class ObservedRecord:
    """A delivery as seen by the oracle"""
    record_id: Any
    payload_key: Union[bytes, str]
    ordering_key: str
    member: str


@dataclass
class ObservedModel:
    """
    What the consumers permanently acknowledged. acked and sequence hold one
    entry per record; per_member holds each member's own acks, so a record
    handed to two members at once shows up under both.
    """
    subscription_id: str
    acked: Dict[Any, ObservedRecord] = field(default_factory=dict)
    sequence: List[ObservedRecord] = field(default_factory=list)
    per_member: Dict[str, List[ObservedRecord]] = field(default_factory=dict)
    delivery_order: Dict[str, List[ObservedRecord]] = field(default_factory=dict)
    deliveries: int = 0
    redeliveries: int = 0
    duplicate_acks: int = 0
    completed: bool = False

    def __len__(self) -> int:
        return len(self.acked)

    def payload_multiset(self) -> Counter:
        return Counter(r.payload_key for r in self.acked.values())

    def payload_sequence(self) -> List[Union[bytes, str]]:
        return [r.payload_key for r in self.sequence]

    def record_ids(self) -> Set[Any]:
        return set(self.acked.keys())

    def member_counts(self) -> Dict[str, int]:
        return {member: len(records) for member, records in self.per_member.items()}

    def members_by_key(self) -> Dict[str, Set[str]]:
        owners: Dict[str, Set[str]] = defaultdict(set)
        for member, records in self.per_member.items():
            for r in records:
                owners[r.ordering_key].add(member)
        return dict(owners)

    def group_size(self) -> int:
        """Sum of per-member acked counts, or the record count when no member view exists"""
        if not self.per_member:
            return len(self.acked)
        return sum(len(records) for records in self.per_member.values())

    def member_record_ids(self, member: str) -> Set[Any]:
        return {r.record_id for r in self.per_member.get(member, [])}


class Guarantee(Enum):
    """Delivery guarantees the result verifier can check"""
    EXACT_MULTISET = "exact_multiset"
    EXACT_SEQUENCE = "exact_sequence"
    SIZE_ONLY = "size_only"
    PER_KEY_ORDER = "per_key_order"
    ZERO_OVERLAP = "zero_overlap"
    KEY_EXCLUSIVITY = "key_exclusivity"
    RECORD_IDS = "record_ids"


@dataclass
class VerificationResult:
    """Outcome of one guarantee check"""
    guarantee: Guarantee
    passed: bool
    expected_count: int
    observed_count: int
    missing: List[Any] = field(default_factory=list)
    unexpected: List[Any] = field(default_factory=list)
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def summary(self) -> str:
        status = "PASSED" if self.passed else "FAILED"
        text = (f"{self.guarantee.value}: {status} "
                f"(expected={self.expected_count}, observed={self.observed_count})")
        if self.message:
            text += f" - {self.message}"
        return text


class AckPolicyKind(Enum):
    ALWAYS = "always"
    RANDOM_NACK = "random_nack"
    SHUFFLE = "shuffle"


@dataclass
class ConsumerGroupConfig:
    """Members attached to the scenario's subscription and how they ack"""
    members: List[str] = field(default_factory=lambda: ["c1"])
    ack_policy: AckPolicyKind = AckPolicyKind.ALWAYS
    member_policies: Dict[str, AckPolicyKind] = field(default_factory=dict)
    withhold_fraction: float = 0.5
    max_withheld: int = 50
    hold_seconds: float = 1.0
    shuffle_probability: float = 0.5
    explicit_nack: bool = False
    ack_timeout: float = 60.0
    fetch_size: int = 100

    def policy_for(self, member: str) -> AckPolicyKind:
        return self.member_policies.get(member, self.ack_policy)


@dataclass
class VerificationConfig:
    """Which guarantees to check and how long to wait for consumers"""
    guarantees: List[Guarantee] = field(default_factory=lambda: [Guarantee.EXACT_MULTISET])
    timeout: float = 20.0
    sample_size: int = 10


@dataclass
class Scenario:
    """Complete harness scenario"""
    scenario_id: str
    topology: ClusterTopology
    workload: WorkloadConfig
    consumers: ConsumerGroupConfig
    verification: VerificationConfig
    stream: Optional[str] = None
    consume_during_production: bool = True
    seed: Optional[int] = None


@dataclass
class RunResult:
    """Complete scenario execution result"""
    scenario_id: str
    run_id: str
    success: bool
    start_time: float
    end_time: float
    produced: int = 0
    observed: int = 0
    verification_results: List[VerificationResult] = field(default_factory=list)
    error_message: Optional[str] = None
    error_category: Optional[str] = None
    node_logs: Dict[str, str] = field(default_factory=dict)
    seed: Optional[int] = None
