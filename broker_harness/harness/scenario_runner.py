"""
Scenario Runner - Wires cluster bring-up, production, consumption,
verification and teardown for one scenario
"""
import time
import logging
from typing import Dict, List, Optional
from ..interfaces import IBrokerClient, IScenarioRunner
from ..models import (
    ClusterHandle, ExpectedModel, NodeRole, ObservedModel, RunResult, Scenario, VerificationResult
)
from ..cluster_orchestrator.orchestrator import ClusterOrchestrator
from .consumption_oracle import ConsumptionOracle, ConsumerHandle, UntilCount
from .error_handler import ErrorHandler, ErrorContext, ErrorCategory, ErrorSeverity, categorize
from .result_verifier import ResultVerifier
from .test_logger import RunLogger
from .workload_generator import WorkloadGenerator

logging.basicConfig(format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s', level=logging.INFO, force=True)
logger = logging.getLogger(__name__)


class ScenarioRunner(IScenarioRunner):
    """
    Runs a scenario end-to-end:
    1. Starts the cluster
    2. Creates the stream and subscription through the first broker
    3. Produces through the first broker while the group consumes through the others
    4. Verifies every requested guarantee
    5. Tears the cluster down and persists node logs, whatever happened before
    """

    def __init__(self, orchestrator: Optional[ClusterOrchestrator] = None, run_logger: Optional[RunLogger] = None):
        self.run_logger = run_logger or RunLogger()
        self.orchestrator = orchestrator or ClusterOrchestrator(run_logger=self.run_logger)
        self.error_handler = ErrorHandler()

    def run(self, scenario: Scenario) -> RunResult:
        start_time = time.time()
        run_id = self.orchestrator.generate_run_id()
        self.error_handler = ErrorHandler(run_id)
        self.run_logger.log_run_start(scenario, run_id)

        handle: Optional[ClusterHandle] = None
        clients: List[IBrokerClient] = []
        expected: Optional[ExpectedModel] = None
        observed: Optional[ObservedModel] = None
        verification_results: List[VerificationResult] = []

        try:
            print()
            logger.info("Step 1: Starting cluster")
            handle = self.orchestrator.start(scenario.topology, test_name=scenario.scenario_id, run_id=run_id)
            self.run_logger.log_cluster_started(handle)

            admin = self.orchestrator.client(handle, NodeRole.BROKER, 0)
            clients.append(admin)
            member_clients = self._member_clients(handle, scenario, clients)

            stream = scenario.stream or f"{scenario.scenario_id}-{run_id}"
            subscription_id = f"{stream}-sub"

            print()
            logger.info(f"Step 2: Creating stream {stream} and subscription {subscription_id}")
            admin.create_stream(stream)
            admin.create_subscription(subscription_id, stream, ack_timeout=scenario.consumers.ack_timeout)
            self.run_logger.log_event('stream_created', {'stream': stream, 'subscription_id': subscription_id})

            generator = WorkloadGenerator(admin, seed=scenario.seed)
            oracle = ConsumptionOracle(admin, fetch_size=scenario.consumers.fetch_size, seed=scenario.seed)

            print()
            logger.info(f"Step 3: Producing {scenario.workload.count} records, "
                        f"consuming with {len(scenario.consumers.members)} member(s)")
            expected, group = self._produce_and_consume(scenario, generator, oracle, stream, subscription_id,
                                                        member_clients)
            self.run_logger.log_workload(expected)

            observed = oracle.collect(group, scenario.verification.timeout, allow_timeout=True)
            self.run_logger.log_observation(observed)
            if not observed.completed:
                self.error_handler.handle_error(ErrorContext(
                    category=ErrorCategory.TIMEOUT,
                    severity=ErrorSeverity.HIGH,
                    message=(f"Only {len(observed)} of {len(expected)} records acked on {subscription_id} "
                             f"within {scenario.verification.timeout:.2f}s"),
                    component="oracle",
                    metadata={'acked': len(observed), 'expected': len(expected)}
                ))

            print()
            logger.info("Step 4: Verifying guarantees")
            verifier = ResultVerifier(sample_size=scenario.verification.sample_size)
            for result in verifier.verify_all(expected, observed, scenario.verification.guarantees):
                verification_results.append(result)
                self.run_logger.log_verification_result(result)
                self.error_handler.record_verification(result)

        except Exception as e:
            category = categorize(e)
            self.error_handler.handle_error(ErrorContext(
                category=category,
                severity=ErrorSeverity.FATAL,
                message=str(e),
                component="runner",
                metadata=getattr(e, 'details', None)
            ))
            self.run_logger.log_error(f"Scenario {scenario.scenario_id} failed: {e}", {
                'category': category.value,
                'type': type(e).__name__
            })

        finally:
            print()
            logger.info("Step 5: Tearing down")
            self._cleanup(handle, clients)

        failures = self.error_handler.failures()
        result = RunResult(
            scenario_id=scenario.scenario_id,
            run_id=run_id,
            success=not failures,
            start_time=start_time,
            end_time=time.time(),
            produced=len(expected) if expected is not None else 0,
            observed=len(observed) if observed is not None else 0,
            verification_results=verification_results,
            error_message=failures[0].message if failures else None,
            error_category=failures[0].category.value if failures else None,
            node_logs=dict(handle.persisted_logs) if handle is not None else {},
            seed=scenario.seed
        )
        self.run_logger.log_run_completion(result)
        return result

    def _member_clients(self, handle: ClusterHandle, scenario: Scenario,
                        clients: List[IBrokerClient]) -> Dict[str, IBrokerClient]:
        """Spread members over the brokers after the first, so consumption crosses nodes"""
        brokers = len(handle.nodes_by_role(NodeRole.BROKER))
        member_clients = {}
        for i, member in enumerate(scenario.consumers.members):
            index = (i + 1) % brokers if brokers > 1 else 0
            client = self.orchestrator.client(handle, NodeRole.BROKER, index)
            clients.append(client)
            member_clients[member] = client
        return member_clients

    def _produce_and_consume(self, scenario: Scenario, generator: WorkloadGenerator, oracle: ConsumptionOracle,
                             stream: str, subscription_id: str, member_clients: Dict[str, IBrokerClient]):
        policy_factory = oracle.group_policy_factory(scenario.consumers)
        stop_condition = UntilCount(scenario.workload.count)

        def start_group() -> ConsumerHandle:
            return oracle.start_group(subscription_id, list(scenario.consumers.members), policy_factory,
                                      stop_condition, member_clients)

        if not scenario.consume_during_production:
            expected = generator.produce(stream, scenario.workload)
            return expected, start_group()

        group = start_group()
        try:
            expected = generator.produce(stream, scenario.workload)
        except Exception:
            try:
                group.stop()
            except Exception as stop_error:
                logger.warning(f"Stopping consumers after a failed production also failed: {stop_error}")
            raise
        return expected, group

    def _cleanup(self, handle: Optional[ClusterHandle], clients: List[IBrokerClient]) -> None:
        """Close clients and tear the cluster down; errors are recorded, never raised"""
        for client in clients:
            try:
                client.close()
            except Exception as e:
                logger.warning(f"Closing client failed: {e}")

        if handle is None:
            return

        for error in self.orchestrator.teardown_cluster(handle):
            self.error_handler.handle_error(ErrorContext(
                category=ErrorCategory.RESOURCE_CLEANUP,
                severity=ErrorSeverity.MEDIUM,
                message=error,
                component="orchestrator"
            ))
