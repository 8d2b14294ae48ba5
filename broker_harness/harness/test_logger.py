"""
Run Logger - Per-run JSON records, node log persistence and summary reports
"""
import json
import time
import logging
import threading
from pathlib import Path
from typing import List, Dict, Any, Optional
from datetime import datetime
from ..interfaces import ILogger
from ..models import (
    Scenario, ClusterHandle, ExpectedModel, ObservedModel, VerificationResult, RunResult
)
from ..utils.node_logs import write_node_log


logger = logging.getLogger(__name__)


class RunLogger(ILogger):
    """
    Thread-safe run logging system.
    Keeps a JSON record per run with cluster events, workload and observation
    summaries, verification results and errors, rewritten to disk on every change.
    """

    def __init__(self, log_dir: str = "/tmp/broker-harness/logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.current_run_id: Optional[str] = None
        self.run_logs: Dict[str, Dict[str, Any]] = {}
        self.run_start_times: Dict[str, float] = {}
        self._lock = threading.Lock()

    def log_run_start(self, scenario: Scenario, run_id: str) -> None:
        """Log the start of a scenario run with its configuration"""
        with self._lock:
            self.current_run_id = run_id
            self.run_start_times[run_id] = time.time()

            self.run_logs[run_id] = {
                'run_id': run_id,
                'scenario_id': scenario.scenario_id,
                'seed': scenario.seed,
                'start_time': self.run_start_times[run_id],
                'start_timestamp': datetime.now().isoformat(),
                'topology': self._serialize_topology(scenario),
                'workload': self._serialize_workload(scenario),
                'consumers': self._serialize_consumers(scenario),
                'guarantees': [g.value for g in scenario.verification.guarantees],
                'events': [],
                'verification_results': [],
                'node_logs': {},
                'errors': [],
                'status': 'running'
            }

            self._log_scenario_summary(scenario, run_id)
            self._write_log_to_disk(run_id)

    def log_event(self, event: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Log a timestamped harness event (cluster started, production finished, ...)"""
        with self._lock:
            if not self.current_run_id:
                logger.warning(f"No active run to log event '{event}' to")
                return

            self.run_logs[self.current_run_id]['events'].append({
                'timestamp': time.time(),
                'datetime': datetime.now().isoformat(),
                'event': event,
                'details': details or {}
            })
            logger.info(f"Event: {event}")
            self._write_log_to_disk(self.current_run_id)

    def log_cluster_started(self, handle: ClusterHandle) -> None:
        self.log_event('cluster_started', {
            'cluster_run_id': handle.run_id,
            'nodes': [
                {'name': node.name, 'role': node.role.value, 'address': node.address, 'pid': node.pid}
                for node in handle.nodes
            ]
        })

    def log_workload(self, expected: ExpectedModel) -> None:
        self.log_event('production_complete', {
            'stream': expected.stream,
            'records': len(expected),
            'ordering_keys': sorted(expected.by_key().keys())
        })

    def log_observation(self, observed: ObservedModel) -> None:
        self.log_event('consumption_complete', {
            'subscription_id': observed.subscription_id,
            'acked': len(observed),
            'deliveries': observed.deliveries,
            'redeliveries': observed.redeliveries,
            'duplicate_acks': observed.duplicate_acks,
            'member_counts': observed.member_counts(),
            'completed': observed.completed
        })

    def log_verification_result(self, result: VerificationResult) -> None:
        """Log one guarantee check with its diff sample"""
        with self._lock:
            if not self.current_run_id:
                logger.warning("No active run to log verification result to")
                return

            self.run_logs[self.current_run_id]['verification_results'].append(
                self._serialize_verification(result)
            )

            if result.passed:
                logger.info(f"Verification {result.summary()}")
            else:
                logger.error(f"Verification {result.summary()}")
            self._write_log_to_disk(self.current_run_id)

    def log_error(self, error_message: str, error_details: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            if not self.current_run_id:
                logger.warning("No active run to log error to")
                return

            self.run_logs[self.current_run_id]['errors'].append({
                'timestamp': time.time(),
                'datetime': datetime.now().isoformat(),
                'message': error_message,
                'details': error_details or {}
            })
            logger.error(f"Logged error: {error_message}")
            self._write_log_to_disk(self.current_run_id)

    def log_run_completion(self, result: RunResult) -> None:
        """Log scenario completion with its final status"""
        with self._lock:
            run_log = self.run_logs.get(result.run_id)
            if run_log is None:
                logger.warning(f"No run log for {result.run_id}")
                return

            run_log.update({
                'end_time': result.end_time,
                'end_timestamp': datetime.fromtimestamp(result.end_time).isoformat(),
                'duration': result.end_time - result.start_time,
                'status': 'passed' if result.success else 'failed',
                'produced': result.produced,
                'observed': result.observed,
                'error_message': result.error_message,
                'error_category': result.error_category
            })
            run_log['node_logs'].update(result.node_logs)

            status = "PASSED" if result.success else "FAILED"
            logger.info(f"Run {result.run_id} ({result.scenario_id}) {status} in {result.end_time - result.start_time:.2f}s")
            self._write_log_to_disk(result.run_id)
            if self.current_run_id == result.run_id:
                self.current_run_id = None

    def persist_node_log(self, test_name: str, node_name: str, run_id: str, text: str) -> str:
        """Persist a node's captured output as <log_dir>/<test_name>/<run_id>-<node_name>.log"""
        path = write_node_log(str(self.log_dir), test_name, run_id, node_name, text)
        logger.info(f"Persisted log of {node_name} to {path}")
        return path

    def generate_report(self, results: List[RunResult]) -> str:
        """Plain-text summary of a set of runs"""
        total = len(results)
        passed = sum(1 for r in results if r.success)

        report_lines = [
            "",
            "=" * 80,
            "BROKER HARNESS REPORT",
            "=" * 80,
            f"Runs: {total}",
            f"Passed: {passed}",
            f"Failed: {total - passed}",
            "",
        ]

        for result in results:
            status = "PASSED" if result.success else "FAILED"
            report_lines.append(
                f"{result.scenario_id} [{result.run_id}]: {status} "
                f"(produced={result.produced}, observed={result.observed}, "
                f"{result.end_time - result.start_time:.2f}s)"
            )
            for verification in result.verification_results:
                report_lines.append(f"  - {verification.summary()}")
            if result.error_message:
                report_lines.append(f"  Error ({result.error_category}): {result.error_message}")
            if result.seed is not None:
                report_lines.append(f"  Seed: {result.seed}")

        report_lines.append("=" * 80)
        return "\n".join(report_lines)

    def get_run_log(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self.run_logs.get(run_id)

    def get_all_run_logs(self) -> Dict[str, Dict[str, Any]]:
        return self.run_logs.copy()

    def _serialize_topology(self, scenario: Scenario) -> Dict[str, Any]:
        topology = scenario.topology
        return {
            'backend': topology.backend,
            'base_port': topology.base_port,
            'base_data_dir': topology.base_data_dir,
            'nodes': [
                {'role': spec.role.value, 'name': spec.name, 'host': spec.host, 'port': spec.port}
                for spec in topology.start_order()
            ]
        }

    def _serialize_workload(self, scenario: Scenario) -> Dict[str, Any]:
        workload = scenario.workload
        return {
            'discipline': workload.discipline.value,
            'count': workload.count,
            'producers': workload.producers,
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
        }

    def _serialize_consumers(self, scenario: Scenario) -> Dict[str, Any]:
        consumers = scenario.consumers
        return {
            'members': list(consumers.members),
            'ack_policy': consumers.ack_policy.value,
            'member_policies': {m: p.value for m, p in consumers.member_policies.items()},
            'ack_timeout': consumers.ack_timeout
        }

    def _serialize_verification(self, result: VerificationResult) -> Dict[str, Any]:
        return {
            'guarantee': result.guarantee.value,
            'passed': result.passed,
            'expected_count': result.expected_count,
            'observed_count': result.observed_count,
            'missing_sample': [repr(m) for m in result.missing],
            'unexpected_sample': [repr(u) for u in result.unexpected],
            'message': result.message,
            'timestamp': result.timestamp,
            'datetime': datetime.fromtimestamp(result.timestamp).isoformat()
        }

    def _log_scenario_summary(self, scenario: Scenario, run_id: str) -> None:
        """Log a human-readable summary of the scenario before execution"""
        workload = scenario.workload
        consumers = scenario.consumers
        summary_lines = [
            "",
            "=" * 80,
            f"SCENARIO SUMMARY: {scenario.scenario_id} (run {run_id})",
            "=" * 80,
            f"Seed: {scenario.seed}",
            "",
            "TOPOLOGY:",
            f"  - Backend: {scenario.topology.backend}",
        ]
        for spec in scenario.topology.start_order():
            summary_lines.append(f"  - {spec.role.value}: {spec.name or '(auto)'} {spec.host}:{spec.port or 'auto'}")

        summary_lines.extend([
            "",
            "WORKLOAD:",
            f"  - Discipline: {workload.discipline.value}, records: {workload.count}",
            f"  - Payload: {workload.payload.kind.value} ({workload.payload.size} bytes)",
            f"  - Batch limits: count={workload.batch.record_count_limit}, "
            f"age={workload.batch.age_limit_ms}ms, bytes={workload.batch.bytes_limit}",
            "",
            "CONSUMERS:",
            f"  - Members: {', '.join(consumers.members)}",
            f"  - Ack policy: {consumers.ack_policy.value}",
            "",
            f"GUARANTEES: {', '.join(g.value for g in scenario.verification.guarantees)}",
            "=" * 80,
            ""
        ])

        for line in summary_lines:
            logger.info(line)

    def _write_log_to_disk(self, run_id: str) -> None:
        """Write run log to disk as JSON"""
        if run_id not in self.run_logs:
            return

        run_log = self.run_logs[run_id]
        log_file = self.log_dir / f"{run_log['scenario_id']}-{run_id}.json"

        try:
            with open(log_file, 'w') as f:
                json.dump(run_log, f, indent=2, default=str)
        except (OSError, TypeError) as e:
            logger.error(f"Failed to write log to disk: {e}")
