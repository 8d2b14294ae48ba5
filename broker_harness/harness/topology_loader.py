"""
Topology and Scenario loaders - YAML descriptions of clusters and scenarios
"""
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from ..models import (
    AckPolicyKind, BatchSetting, ClusterTopology, ConsumerGroupConfig, Discipline, Guarantee,
    NodeRole, NodeSpec, PayloadKind, PayloadShape, Scenario, VerificationConfig, WorkloadConfig,
    DISABLED, MAX_RECORD_SIZE
)

BACKENDS = ['process', 'loopback']


def _enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


def _read_yaml(file_path: Union[str, Path]) -> Dict[str, Any]:
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    try:
        with open(file_path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML syntax in {file_path}: {e}")

    if not isinstance(data, dict):
        raise ValueError(f"{file_path}: top level must be a mapping")
    return data


class TopologyLoader:
    """Builds ClusterTopology objects from YAML/JSON dictionaries"""

    @staticmethod
    def load_from_file(file_path: Union[str, Path]) -> ClusterTopology:
        data = _read_yaml(file_path)
        return TopologyLoader.from_dict(data.get('topology', data))

    @staticmethod
    def from_dict(topology_dict: Dict[str, Any]) -> ClusterTopology:
        errors = ScenarioValidator.validate_topology(topology_dict)
        if errors:
            raise ValueError("Invalid topology:\n  " + "\n  ".join(errors))

        backend = topology_dict.get('backend', 'process')
        base_port = topology_dict.get('base_port', 6570)

        nodes = [TopologyLoader._parse_node(node) for node in topology_dict.get('nodes', [])]
        # `brokers: N` shorthand adds N broker nodes with default settings
        for _ in range(topology_dict.get('brokers', 0)):
            nodes.append(NodeSpec(role=NodeRole.BROKER, command=list(topology_dict.get('broker_command', []))))

        return ClusterTopology(
            nodes=nodes,
            base_data_dir=topology_dict.get('base_data_dir', "/tmp/broker-harness"),
            log_dir=topology_dict.get('log_dir', "/tmp/broker-harness/logs"),
            backend=backend,
            client_factory=topology_dict.get('client_factory'),
            base_port=base_port,
            enable_cleanup=topology_dict.get('enable_cleanup', True),
            stop_timeout=topology_dict.get('stop_timeout', 5.0),
            max_record_size=topology_dict.get('max_record_size', MAX_RECORD_SIZE)
        )

    @staticmethod
    def to_dict(topology: ClusterTopology) -> Dict[str, Any]:
        return {
            'backend': topology.backend,
            'base_port': topology.base_port,
            'base_data_dir': topology.base_data_dir,
            'log_dir': topology.log_dir,
            'client_factory': topology.client_factory,
            'enable_cleanup': topology.enable_cleanup,
            'stop_timeout': topology.stop_timeout,
            'max_record_size': topology.max_record_size,
            'nodes': [
                {
                    'role': spec.role.value,
                    'name': spec.name,
                    'host': spec.host,
                    'port': spec.port,
                    'internal_port': spec.internal_port,
                    'data_dir': spec.data_dir,
                    'command': list(spec.command),
                    'ready_timeout': spec.ready_timeout
                }
                for spec in topology.nodes
            ]
        }

    @staticmethod
    def _parse_node(node_dict: Dict[str, Any]) -> NodeSpec:
        return NodeSpec(
            role=NodeRole(node_dict['role']),
            host=node_dict.get('host', "127.0.0.1"),
            port=node_dict.get('port') or 0,
            internal_port=node_dict.get('internal_port'),
            data_dir=node_dict.get('data_dir'),
            command=[str(arg) for arg in node_dict.get('command', [])],
            name=node_dict.get('name'),
            ready_timeout=node_dict.get('ready_timeout', 30.0)
        )


class ScenarioLoader:
    """Loads complete harness scenarios"""

    @staticmethod
    def load_from_file(file_path: Union[str, Path]) -> Scenario:
        """Load and validate a scenario from a YAML (or JSON) file"""
        data = _read_yaml(file_path)
        return ScenarioLoader.from_dict(data, source=str(file_path))

    @staticmethod
    def load_from_string(config_text: str) -> Scenario:
        try:
            data = yaml.safe_load(config_text)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML syntax: {e}")
        if not isinstance(data, dict):
            raise ValueError("Scenario must be a mapping")
        return ScenarioLoader.from_dict(data)

    @staticmethod
    def from_dict(config: Dict[str, Any], source: Optional[str] = None) -> Scenario:
        errors = ScenarioValidator.validate_structure(config)
        if errors:
            where = f" in {source}" if source else ""
            raise ValueError(f"Invalid scenario{where}:\n  " + "\n  ".join(errors))

        return Scenario(
            scenario_id=config['scenario_id'],
            topology=TopologyLoader.from_dict(config['topology']),
            workload=ScenarioLoader._parse_workload(config.get('workload', {})),
            consumers=ScenarioLoader._parse_consumers(config.get('consumers', {})),
            verification=ScenarioLoader._parse_verification(config.get('verification', {})),
            stream=config.get('stream'),
            consume_during_production=config.get('consume_during_production', True),
            seed=config.get('seed')
        )

    @staticmethod
    def save_scenario(scenario: Scenario, file_path: Union[str, Path]) -> None:
        """Save a scenario as YAML for reproducibility"""
        workload = scenario.workload
        consumers = scenario.consumers
        scenario_dict = {
            'scenario_id': scenario.scenario_id,
            'seed': scenario.seed,
            'stream': scenario.stream,
            'consume_during_production': scenario.consume_during_production,
            'topology': TopologyLoader.to_dict(scenario.topology),
            'workload': {
                'discipline': workload.discipline.value,
                'count': workload.count,
                'producers': workload.producers,
                'write_timeout': workload.write_timeout,
                'seed': workload.seed,
                'payload': {
                    'kind': workload.payload.kind.value,
                    'size': workload.payload.size,
                    'ordering_keys': workload.payload.ordering_keys
                },
                'batch': {
                    'record_count_limit': workload.batch.record_count_limit,
                    'age_limit_ms': workload.batch.age_limit_ms,
                    'bytes_limit': workload.batch.bytes_limit
                }
            },
            'consumers': {
                'members': list(consumers.members),
                'ack_policy': consumers.ack_policy.value,
                'member_policies': {m: p.value for m, p in consumers.member_policies.items()},
                'withhold_fraction': consumers.withhold_fraction,
                'max_withheld': consumers.max_withheld,
                'hold_seconds': consumers.hold_seconds,
                'shuffle_probability': consumers.shuffle_probability,
                'explicit_nack': consumers.explicit_nack,
                'ack_timeout': consumers.ack_timeout,
                'fetch_size': consumers.fetch_size
            },
            'verification': {
                'guarantees': [g.value for g in scenario.verification.guarantees],
                'timeout': scenario.verification.timeout,
                'sample_size': scenario.verification.sample_size
            }
        }

        with open(Path(file_path), 'w') as f:
            yaml.dump(scenario_dict, f, default_flow_style=False, sort_keys=False)

    @staticmethod
    def _parse_workload(workload_dict: Dict[str, Any]) -> WorkloadConfig:
        payload_dict = workload_dict.get('payload', {})
        batch_dict = workload_dict.get('batch', {})
        return WorkloadConfig(
            discipline=Discipline(workload_dict.get('discipline', Discipline.BATCHED.value)),
            count=workload_dict.get('count', 100),
            payload=PayloadShape(
                kind=PayloadKind(payload_dict.get('kind', PayloadKind.RAW.value)),
                size=payload_dict.get('size', 128),
                ordering_keys=payload_dict.get('ordering_keys')
            ),
            batch=BatchSetting(
                record_count_limit=batch_dict.get('record_count_limit', 100),
                age_limit_ms=batch_dict.get('age_limit_ms', 100),
                bytes_limit=batch_dict.get('bytes_limit', DISABLED)
            ),
            producers=workload_dict.get('producers', 2),
            write_timeout=workload_dict.get('write_timeout', 30.0),
            seed=workload_dict.get('seed')
        )

    @staticmethod
    def _parse_consumers(consumers_dict: Dict[str, Any]) -> ConsumerGroupConfig:
        defaults = ConsumerGroupConfig()
        return ConsumerGroupConfig(
            members=list(consumers_dict.get('members', defaults.members)),
            ack_policy=AckPolicyKind(consumers_dict.get('ack_policy', AckPolicyKind.ALWAYS.value)),
            member_policies={
                member: AckPolicyKind(policy)
                for member, policy in consumers_dict.get('member_policies', {}).items()
            },
            withhold_fraction=consumers_dict.get('withhold_fraction', defaults.withhold_fraction),
            max_withheld=consumers_dict.get('max_withheld', defaults.max_withheld),
            hold_seconds=consumers_dict.get('hold_seconds', defaults.hold_seconds),
            shuffle_probability=consumers_dict.get('shuffle_probability', defaults.shuffle_probability),
            explicit_nack=consumers_dict.get('explicit_nack', defaults.explicit_nack),
            ack_timeout=consumers_dict.get('ack_timeout', defaults.ack_timeout),
            fetch_size=consumers_dict.get('fetch_size', defaults.fetch_size)
        )

    @staticmethod
    def _parse_verification(verification_dict: Dict[str, Any]) -> VerificationConfig:
        defaults = VerificationConfig()
        guarantees = verification_dict.get('guarantees')
        return VerificationConfig(
            guarantees=[Guarantee(g) for g in guarantees] if guarantees else defaults.guarantees,
            timeout=verification_dict.get('timeout', defaults.timeout),
            sample_size=verification_dict.get('sample_size', defaults.sample_size)
        )


class ScenarioValidator:
    """Validator for scenario files with detailed error reporting"""

    @staticmethod
    def validate_structure(config_dict: dict) -> list:
        """
        Validate the structure of a scenario dictionary.
        Returns a list of error messages; empty when valid.
        """
        errors = []

        for field in ['scenario_id', 'topology']:
            if field not in config_dict:
                errors.append(f"Missing required field: {field}")

        if 'topology' in config_dict:
            errors.extend(ScenarioValidator.validate_topology(config_dict['topology']))

        if 'workload' in config_dict:
            errors.extend(ScenarioValidator._validate_workload(config_dict['workload']))

        if 'consumers' in config_dict:
            errors.extend(ScenarioValidator._validate_consumers(config_dict['consumers']))

        if 'verification' in config_dict:
            errors.extend(ScenarioValidator._validate_verification(config_dict['verification']))

        return errors

    @staticmethod
    def validate_topology(topology_dict: dict) -> list:
        """Validate topology configuration"""
        errors = []

        if not isinstance(topology_dict, dict):
            errors.append("topology: Must be a dictionary")
            return errors

        backend = topology_dict.get('backend', 'process')
        if backend not in BACKENDS:
            errors.append(f"topology.backend: Must be one of {BACKENDS}, got '{backend}'")

        nodes = topology_dict.get('nodes', [])
        brokers = topology_dict.get('brokers', 0)
        if not isinstance(nodes, list):
            errors.append("topology.nodes: Must be a list")
            nodes = []
        if not isinstance(brokers, int) or brokers < 0:
            errors.append(f"topology.brokers: Must be a non-negative integer, got {brokers}")
            brokers = 0

        valid_roles = _enum_values(NodeRole)
        broker_count = brokers
        for i, node in enumerate(nodes):
            if not isinstance(node, dict):
                errors.append(f"topology.nodes[{i}]: Must be a dictionary")
                continue
            role = node.get('role')
            if role not in valid_roles:
                errors.append(f"topology.nodes[{i}].role: Must be one of {valid_roles}, got '{role}'")
            elif role == NodeRole.BROKER.value:
                broker_count += 1

            port = node.get('port')
            if port is not None and (not isinstance(port, int) or not (0 <= port <= 65535)):
                errors.append(f"topology.nodes[{i}].port: Must be an integer between 0 and 65535, got {port}")

            if backend == 'process' and not node.get('command'):
                errors.append(f"topology.nodes[{i}]: Process nodes need a 'command'")
            if 'command' in node and not isinstance(node['command'], list):
                errors.append(f"topology.nodes[{i}].command: Must be a list of arguments")

        if broker_count == 0:
            errors.append("topology: At least one broker node is required")
        if backend == 'process' and brokers and not topology_dict.get('broker_command'):
            errors.append("topology.broker_command: Required with the 'brokers' shorthand on the process backend")

        base_port = topology_dict.get('base_port')
        if base_port is not None and (not isinstance(base_port, int) or not (1024 <= base_port <= 65535)):
            errors.append(f"topology.base_port: Must be an integer between 1024 and 65535, got {base_port}")

        client_factory = topology_dict.get('client_factory')
        if client_factory is not None and (not isinstance(client_factory, str) or ':' not in client_factory):
            errors.append("topology.client_factory: Must look like 'module:callable'")

        return errors

    @staticmethod
    def _validate_workload(workload_dict: dict) -> list:
        errors = []

        if not isinstance(workload_dict, dict):
            errors.append("workload: Must be a dictionary")
            return errors

        discipline = workload_dict.get('discipline')
        if discipline is not None and discipline not in _enum_values(Discipline):
            errors.append(f"workload.discipline: Must be one of {_enum_values(Discipline)}")

        for field in ['count', 'producers']:
            if field in workload_dict:
                value = workload_dict[field]
                if not isinstance(value, int) or value <= 0:
                    errors.append(f"workload.{field}: Must be a positive integer")

        payload = workload_dict.get('payload', {})
        if not isinstance(payload, dict):
            errors.append("workload.payload: Must be a dictionary")
        else:
            kind = payload.get('kind')
            if kind is not None and kind not in _enum_values(PayloadKind):
                errors.append(f"workload.payload.kind: Must be one of {_enum_values(PayloadKind)}")
            size = payload.get('size')
            if size is not None and (not isinstance(size, int) or size < 0):
                errors.append("workload.payload.size: Must be a non-negative integer")
            keys = payload.get('ordering_keys')
            if keys is not None and (not isinstance(keys, list) or not keys):
                errors.append("workload.payload.ordering_keys: Must be a non-empty list")

        batch = workload_dict.get('batch', {})
        if not isinstance(batch, dict):
            errors.append("workload.batch: Must be a dictionary")
        else:
            defaults = BatchSetting()
            limits = {
                'record_count_limit': batch.get('record_count_limit', defaults.record_count_limit),
                'age_limit_ms': batch.get('age_limit_ms', defaults.age_limit_ms),
                'bytes_limit': batch.get('bytes_limit', defaults.bytes_limit),
            }
            bad = [field for field, value in limits.items() if not isinstance(value, int)]
            for field in bad:
                errors.append(f"workload.batch.{field}: Must be an integer (-1 disables)")
            if not bad and all(value <= 0 for value in limits.values()):
                errors.append("workload.batch: At least one limit must be enabled")

        return errors

    @staticmethod
    def _validate_consumers(consumers_dict: dict) -> list:
        errors = []

        if not isinstance(consumers_dict, dict):
            errors.append("consumers: Must be a dictionary")
            return errors

        members = consumers_dict.get('members')
        if members is not None:
            if not isinstance(members, list) or not members:
                errors.append("consumers.members: Must be a non-empty list")
            elif len(set(members)) != len(members):
                errors.append("consumers.members: Member names must be unique")

        valid_policies = _enum_values(AckPolicyKind)
        policy = consumers_dict.get('ack_policy')
        if policy is not None and policy not in valid_policies:
            errors.append(f"consumers.ack_policy: Must be one of {valid_policies}")
        member_policies = consumers_dict.get('member_policies', {})
        if not isinstance(member_policies, dict):
            errors.append("consumers.member_policies: Must be a dictionary of member to ack policy")
        else:
            for member, member_policy in member_policies.items():
                if member_policy not in valid_policies:
                    errors.append(f"consumers.member_policies.{member}: Must be one of {valid_policies}")

        for field in ['withhold_fraction', 'shuffle_probability']:
            if field in consumers_dict:
                value = consumers_dict[field]
                if not isinstance(value, (int, float)) or not (0 <= value <= 1):
                    errors.append(f"consumers.{field}: Must be a number between 0 and 1")

        for field in ['hold_seconds', 'ack_timeout']:
            if field in consumers_dict:
                value = consumers_dict[field]
                if not isinstance(value, (int, float)) or value <= 0:
                    errors.append(f"consumers.{field}: Must be a positive number")

        if 'explicit_nack' in consumers_dict and not isinstance(consumers_dict['explicit_nack'], bool):
            errors.append("consumers.explicit_nack: Must be a boolean")

        return errors

    @staticmethod
    def _validate_verification(verification_dict: dict) -> list:
        errors = []

        if not isinstance(verification_dict, dict):
            errors.append("verification: Must be a dictionary")
            return errors

        valid_guarantees = _enum_values(Guarantee)
        for guarantee in verification_dict.get('guarantees', []):
            if guarantee not in valid_guarantees:
                errors.append(f"verification.guarantees: Invalid guarantee '{guarantee}'")

        timeout = verification_dict.get('timeout')
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            errors.append("verification.timeout: Must be a positive number")

        return errors
