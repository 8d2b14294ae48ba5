"""
Base interfaces and abstract classes for all major components
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Any, Dict
from .models import (
    ClusterTopology, ClusterHandle, NodeHandle, NodeRole, Record, Delivery,
    WorkloadConfig, ExpectedModel, ObservedModel, Guarantee, VerificationResult,
    RunResult, Scenario
)


class IClusterOrchestrator(ABC):
    """Interface for cluster lifecycle management"""

    @abstractmethod
    def start(self, topology: ClusterTopology, test_name: str = "harness",
              run_id: Optional[str] = None) -> ClusterHandle:
        """Start all nodes in dependency order and wait for each to be ready"""
        pass

    @abstractmethod
    def stop(self, handle: ClusterHandle) -> None:
        """Persist node logs, terminate nodes and release scratch storage"""
        pass

    @abstractmethod
    def address(self, handle: ClusterHandle, role: NodeRole, index: int = 0) -> str:
        """Address of a specific node"""
        pass

    @abstractmethod
    def wait_until_ready(self, node: NodeHandle, timeout: Optional[float] = None) -> bool:
        """Poll a node's control port until it accepts connections"""
        pass

    @abstractmethod
    def restart_node(self, handle: ClusterHandle, role: NodeRole, index: int = 0) -> NodeHandle:
        """Restart a single node, keeping its ports and data directory"""
        pass


class IBrokerClient(ABC):
    """Client-facing contract of the broker under test"""

    @abstractmethod
    def create_stream(self, name: str) -> None:
        pass

    @abstractmethod
    def list_streams(self) -> List[str]:
        pass

    @abstractmethod
    def delete_stream(self, name: str) -> None:
        pass

    @abstractmethod
    def create_subscription(self, subscription_id: str, stream: str, ack_timeout: float = 60.0) -> None:
        pass

    @abstractmethod
    def list_subscriptions(self) -> List[str]:
        pass

    @abstractmethod
    def delete_subscription(self, subscription_id: str) -> None:
        pass

    @abstractmethod
    def append(self, stream: str, records: List[Record]) -> List[Any]:
        """Write records atomically as one batch and return their record ids"""
        pass

    @abstractmethod
    def attach(self, subscription_id: str, member: str) -> None:
        """Join a subscription's consumer group"""
        pass

    @abstractmethod
    def detach(self, subscription_id: str, member: str) -> None:
        """Leave a subscription's consumer group, releasing pending deliveries"""
        pass

    @abstractmethod
    def fetch(self, subscription_id: str, member: str, max_records: int, timeout: float) -> List[Delivery]:
        """Block up to timeout for deliveries assigned to a member"""
        pass

    @abstractmethod
    def ack(self, subscription_id: str, member: str, record_ids: List[Any]) -> None:
        pass

    @abstractmethod
    def nack(self, subscription_id: str, member: str, record_ids: List[Any]) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class IWorkloadGenerator(ABC):
    """Interface for workload generation"""

    @abstractmethod
    def produce(self, stream: str, config: WorkloadConfig) -> ExpectedModel:
        """Produce records with a discipline and return the frozen expected model"""
        pass


class IConsumptionOracle(ABC):
    """Interface for consumption and observation"""

    @abstractmethod
    def consume(self, subscription_id: str, member: str, ack_policy, stop_condition,
                timeout: float) -> ObservedModel:
        """Consume until the stop condition holds or the timeout expires"""
        pass

    @abstractmethod
    def consume_async(self, subscription_id: str, member: str, ack_policy, stop_condition):
        """Start consuming and return a cancellable handle"""
        pass


class IResultVerifier(ABC):
    """Interface for comparing expected and observed models"""

    @abstractmethod
    def verify(self, expected: ExpectedModel, observed: ObservedModel, guarantee: Guarantee) -> VerificationResult:
        pass


class IScenarioRunner(ABC):
    """Interface for end-to-end scenario execution"""

    @abstractmethod
    def run(self, scenario: Scenario) -> RunResult:
        pass


class ILogger(ABC):
    """Interface for run logging and reporting"""

    @abstractmethod
    def log_run_start(self, scenario: Scenario, run_id: str) -> None:
        pass

    @abstractmethod
    def log_event(self, event: str, details: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abstractmethod
    def log_verification_result(self, result: VerificationResult) -> None:
        pass

    @abstractmethod
    def log_run_completion(self, result: RunResult) -> None:
        pass

    @abstractmethod
    def persist_node_log(self, test_name: str, node_name: str, run_id: str, text: str) -> str:
        pass

    @abstractmethod
    def generate_report(self, results: List[RunResult]) -> str:
        pass
