"""
Harness - Workload generation, consumption oracle, verification and run logging
"""
from .workload_generator import WorkloadGenerator, generate_records
from .consumption_oracle import (
    ConsumptionOracle,
    ConsumerHandle,
    ObservationCollector,
    AckLedger,
    AlwaysAck,
    RandomNack,
    ShuffleRedeliver,
    UntilCount,
    UntilPredicate,
    Never
)
from .pending_pool import PendingPool
from .result_verifier import ResultVerifier
from .topology_loader import TopologyLoader, ScenarioLoader, ScenarioValidator
from .test_logger import RunLogger
from .error_handler import ErrorHandler, ErrorContext, ErrorCategory, ErrorSeverity
from .scenario_runner import ScenarioRunner

__all__ = [
    'WorkloadGenerator',
    'generate_records',
    'ConsumptionOracle',
    'ConsumerHandle',
    'ObservationCollector',
    'AckLedger',
    'AlwaysAck',
    'RandomNack',
    'ShuffleRedeliver',
    'UntilCount',
    'UntilPredicate',
    'Never',
    'PendingPool',
    'ResultVerifier',
    'TopologyLoader',
    'ScenarioLoader',
    'ScenarioValidator',
    'RunLogger',
    'ErrorHandler',
    'ErrorContext',
    'ErrorCategory',
    'ErrorSeverity',
    'ScenarioRunner',
]
