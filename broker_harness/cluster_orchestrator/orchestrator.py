import os
import sys
import time
import uuid
import shutil
import logging
import subprocess
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple
from ..errors import InfrastructureError
from ..interfaces import IBrokerClient, ILogger
from ..models import BackoffConfig, ClusterHandle, ClusterTopology, NodeHandle, NodeRole, NodeSpec
from ..broker_client.base import load_client_factory
from ..broker_client.loopback import LoopbackBroker
from ..utils.net_utils import is_port_open, is_port_bound
from ..utils.node_logs import write_node_log
from .base import BaseClusterOrchestrator

logging.basicConfig(format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s', level=logging.INFO, force=True)
logger = logging.getLogger(__name__)

INTERNAL_PORT_OFFSET = 10000
DEFAULT_READY_TIMEOUT = 30.0
LOG_TAIL_LINES = 20
BACKENDS = ("process", "loopback")


class PortManager:
    """Manages client/internal port allocation for cluster nodes"""

    def __init__(self, base_port: int = 6570, max_ports: int = 1000, host: str = "127.0.0.1"):
        self.base_port = base_port
        self.max_ports = max_ports
        self.host = host
        self.available_ports = set(range(base_port, base_port + max_ports))
        self.allocated_ports: Dict[str, Tuple[int, Optional[int]]] = {}

    def allocate_ports(self, node_id: str) -> Tuple[int, int]:
        """Allocate client and internal ports for a node, skipping ports already bound on the host"""
        for client_port in sorted(self.available_ports):
            internal_port = client_port + INTERNAL_PORT_OFFSET
            if internal_port > 65535:
                break
            if is_port_bound(self.host, client_port) or is_port_bound(self.host, internal_port):
                logger.debug(f"Skipping port {client_port}, already in use on {self.host}")
                continue

            self.available_ports.discard(client_port)
            self.allocated_ports[node_id] = (client_port, internal_port)
            logger.info(f"Allocated ports: {client_port}, {internal_port}")
            return client_port, internal_port

        raise InfrastructureError(f"No available ports from base port {self.base_port}")

    def reserve_ports(self, node_id: str, client_port: int, internal_port: Optional[int] = None) -> None:
        """Record ports fixed by the topology so they're never handed out"""
        self.available_ports.discard(client_port)
        self.allocated_ports[node_id] = (client_port, internal_port)

    def release_ports(self, node_id: str) -> None:
        """Release allocated ports for a node"""
        if node_id in self.allocated_ports:
            client_port, internal_port = self.allocated_ports[node_id]
            if self.base_port <= client_port < self.base_port + self.max_ports:
                self.available_ports.add(client_port)
            del self.allocated_ports[node_id]
            logger.info(f"Released ports: {client_port}, {internal_port}")


class ClusterOrchestrator(BaseClusterOrchestrator):
    """
    Brings nodes up strictly in dependency order (coordination, storage,
    brokers), waiting for each one's control port before starting the next,
    and tears them down in reverse with log capture before termination.
    """

    def __init__(self, port_manager: Optional[PortManager] = None, run_logger: Optional[ILogger] = None,
                 backoff: Optional[BackoffConfig] = None):
        super().__init__(run_logger=run_logger, backoff=backoff)
        self.port_manager = port_manager
        self._port_managers: Dict[str, PortManager] = {}

    def generate_run_id(self) -> str:
        """Generate unique run identifier"""
        return str(uuid.uuid4())[:8]

    def start(self, topology: ClusterTopology, test_name: str = "harness",
              run_id: Optional[str] = None) -> ClusterHandle:
        if topology.backend not in BACKENDS:
            raise ValueError(f"Unknown backend '{topology.backend}', expected one of {BACKENDS}")

        run_id = run_id or self.generate_run_id()
        handle = ClusterHandle(
            run_id=run_id,
            topology=topology,
            nodes=[],
            scratch_dir=os.path.join(topology.base_data_dir, f"run-{run_id}"),
            creation_time=time.time(),
            test_name=test_name
        )
        os.makedirs(handle.scratch_dir, exist_ok=True)
        self.active_clusters[run_id] = handle
        self._port_managers[run_id] = self.port_manager or PortManager(base_port=topology.base_port)

        print()
        logger.info(f"Starting cluster {run_id} for {test_name}: {len(topology.nodes)} nodes, backend={topology.backend}")

        if topology.backend == "loopback":
            handle.loopback = LoopbackBroker(max_record_size=topology.max_record_size)

        try:
            for spec, index in self._indexed_start_order(topology):
                node = self._spawn_node(handle, spec, index)
                handle.nodes.append(node)

                if not self.wait_until_ready(node, spec.ready_timeout):
                    raise InfrastructureError(
                        self._not_ready_message(node, spec.ready_timeout),
                        details={'node': node.name, 'address': node.address, 'run_id': run_id}
                    )
                logger.info(f"Node {node.name} is ready on {node.address}")
        except Exception as e:
            logger.error(f"Cluster {run_id} setup failed: {e}")
            self._teardown(handle)
            raise

        handle.is_ready = True
        logger.info(f"All {len(handle.nodes)} nodes of cluster {run_id} are ready")
        return handle

    def stop(self, handle: ClusterHandle) -> None:
        errors = self._teardown(handle)
        if errors:
            raise InfrastructureError(
                f"Teardown of cluster {handle.run_id} hit {len(errors)} error(s): {errors[0]}",
                details={'errors': errors, 'run_id': handle.run_id}
            )

    def setup_cluster(self, topology: ClusterTopology, test_name: str = "harness",
                      run_id: Optional[str] = None) -> ClusterHandle:
        """Start a cluster; nodes already started are torn down if a later one fails"""
        return self.start(topology, test_name, run_id)

    def teardown_cluster(self, handle: ClusterHandle) -> List[str]:
        """Tear down without raising; returns the collected teardown errors"""
        return self._teardown(handle)

    def address(self, handle: ClusterHandle, role: NodeRole, index: int = 0) -> str:
        return handle.address(role, index)

    def addresses(self, handle: ClusterHandle, role: NodeRole = NodeRole.BROKER) -> List[str]:
        return handle.addresses(role)

    def client(self, handle: ClusterHandle, role: NodeRole = NodeRole.BROKER, index: int = 0) -> IBrokerClient:
        """Build a broker client connected to one specific node"""
        address = handle.address(role, index)
        if handle.loopback is not None:
            return handle.loopback.client(address)

        if not handle.topology.client_factory:
            raise ValueError("Topology has no client_factory configured; cannot connect to process nodes")
        factory = load_client_factory(handle.topology.client_factory)
        return factory(address)

    def wait_until_ready(self, node: NodeHandle, timeout: Optional[float] = None) -> bool:
        """
        Poll the node's control port with exponential backoff.

        Has no side effects, so it can be called any number of times. Returns
        False as soon as the process exits, or when the timeout passes.
        """
        if node.process is None:
            return node.is_running()

        timeout = DEFAULT_READY_TIMEOUT if timeout is None else timeout
        deadline = time.monotonic() + timeout

        for delay in self.backoff.delays():
            if not node.is_running():
                logger.warning(f"Node {node.name} exited with code {node.process.poll()} before becoming ready")
                return False

            remaining = deadline - time.monotonic()
            if is_port_open(node.host, node.port, timeout=min(1.0, max(remaining, 0.05))):
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(delay, remaining))

        return False

    def restart_node(self, handle: ClusterHandle, role: NodeRole, index: int = 0,
                     wait_ready: bool = True, ready_timeout: float = DEFAULT_READY_TIMEOUT) -> NodeHandle:
        """Restart a single node, keeping its ports, data directory and log file"""
        node = handle.node(role, index)
        logger.info(f"Restarting {node.name} on {node.address}")

        self.terminate_node(node, handle.topology.stop_timeout)

        if handle.loopback is not None:
            self._append_log(node, f"loopback {node.role.value} node {node.name} restarted on {node.address}\n")
            node.closed = False
            node.start_time = time.time()
            return node

        self._launch(node)

        if wait_ready and not self.wait_until_ready(node, ready_timeout):
            message = self._not_ready_message(node, ready_timeout)
            self.terminate_node(node, handle.topology.stop_timeout)
            raise InfrastructureError(message, details={'node': node.name, 'run_id': handle.run_id})

        return node

    def terminate_node(self, node: NodeHandle, timeout: float = 5.0) -> None:
        """Terminate a node process: SIGTERM, bounded wait, then SIGKILL"""
        if node.process is None or node.process.poll() is not None:
            node.closed = True
            return

        logger.info(f"Terminating {node.name} (PID {node.pid})")

        node.process.terminate()
        try:
            node.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"{node.name} still running {timeout:.2f}s after SIGTERM, killing")
            node.process.kill()
            node.process.wait()

        node.closed = True
        logger.info(f"{node.name} terminated")

    def persist_node_log(self, handle: ClusterHandle, node: NodeHandle) -> str:
        """Persist a node's captured output tagged with the run id"""
        text = node.read_log()
        if self.run_logger is not None:
            return self.run_logger.persist_node_log(handle.test_name, node.name, handle.run_id, text)
        return write_node_log(handle.topology.log_dir, handle.test_name, handle.run_id, node.name, text)

    def build_node_command(self, handle: ClusterHandle, spec: NodeSpec, node: NodeHandle) -> List[str]:
        """Fill the node's command template with its address, storage and dependency addresses"""
        if not spec.command:
            raise ValueError(f"Node {node.name} has no command; process nodes need one")

        context = {
            'python': sys.executable,
            'name': node.name,
            'index': node.index,
            'run_id': handle.run_id,
            'host': node.host,
            'port': node.port,
            'internal_port': node.internal_port if node.internal_port is not None else "",
            'data_dir': node.data_dir,
            'coordination_address': self._dependency_address(handle, NodeRole.COORDINATION),
            'storage_address': self._dependency_address(handle, NodeRole.STORAGE),
        }

        try:
            return [str(arg).format(**context) for arg in spec.command]
        except KeyError as e:
            raise ValueError(f"Unknown placeholder {e} in command of {node.name}")

    def _indexed_start_order(self, topology: ClusterTopology) -> Iterator[Tuple[NodeSpec, int]]:
        counts: Dict[NodeRole, int] = {}
        for spec in topology.start_order():
            index = counts.get(spec.role, 0)
            counts[spec.role] = index + 1
            yield spec, index

    def _dependency_address(self, handle: ClusterHandle, role: NodeRole) -> str:
        return ",".join(node.address for node in handle.nodes_by_role(role))

    def _spawn_node(self, handle: ClusterHandle, spec: NodeSpec, index: int) -> NodeHandle:
        name = spec.name or f"{spec.role.value}-{index}"

        if handle.loopback is not None:
            port = spec.port or handle.topology.base_port + len(handle.nodes)
            internal_port = spec.internal_port
        else:
            ports = self._port_managers[handle.run_id]
            if spec.port:
                port, internal_port = spec.port, spec.internal_port
                ports.reserve_ports(name, port, internal_port)
            else:
                port, allocated_internal = ports.allocate_ports(name)
                internal_port = spec.internal_port or allocated_internal

        data_dir = spec.data_dir or os.path.join(handle.scratch_dir, name)
        os.makedirs(data_dir, exist_ok=True)

        node = NodeHandle(
            name=name,
            role=spec.role,
            index=index,
            host=spec.host,
            port=port,
            internal_port=internal_port,
            data_dir=data_dir,
            log_file=os.path.join(handle.scratch_dir, f"{name}.log")
        )

        if handle.loopback is not None:
            self._append_log(node, f"loopback {node.role.value} node {name} serving {node.address}\n")
            node.start_time = time.time()
            logger.info(f"Registered loopback node {name} on {node.address}")
            return node

        node.command = self.build_node_command(handle, spec, node)
        self._launch(node)
        return node

    def _launch(self, node: NodeHandle) -> None:
        logger.info(f"Spawning {node.name} on {node.address}")
        try:
            with open(node.log_file, 'a') as log_fh:
                process = subprocess.Popen(node.command, stdout=log_fh, stderr=subprocess.STDOUT)
        except OSError as e:
            raise InfrastructureError(f"Failed to spawn {node.name}: {e}", details={'command': node.command}) from e

        node.process = process
        node.pid = process.pid
        node.start_time = time.time()
        node.closed = False
        logger.info(f"Spawned {node.name} with PID {process.pid}")

    def _append_log(self, node: NodeHandle, text: str) -> None:
        with open(node.log_file, 'a') as f:
            f.write(text)

    def _not_ready_message(self, node: NodeHandle, timeout: float) -> str:
        if node.process is not None and node.process.poll() is not None:
            reason = f"exited with code {node.process.poll()}"
        else:
            reason = f"was not reachable within {timeout:.2f}s"
        tail = "\n".join(node.read_log().splitlines()[-LOG_TAIL_LINES:])
        return f"Node {node.name} on {node.address} {reason}. Last output:\n{tail}"

    def _teardown(self, handle: ClusterHandle) -> List[str]:
        """Persist logs, terminate nodes, then release scratch storage. Collects errors instead of raising."""
        if self.active_clusters.pop(handle.run_id, None) is None:
            return []

        print()
        logger.info(f"Tearing down cluster {handle.run_id}")
        errors: List[str] = []

        # Reverse dependency order: brokers first, coordination last
        for node in reversed(handle.nodes):
            try:
                handle.persisted_logs[node.name] = self.persist_node_log(handle, node)
            except Exception as e:
                errors.append(f"Persisting log of {node.name} failed: {e}")

        for node in reversed(handle.nodes):
            try:
                self.terminate_node(node, handle.topology.stop_timeout)
            except Exception as e:
                errors.append(f"Terminating {node.name} failed: {e}")

        ports = self._port_managers.pop(handle.run_id, None)
        if ports is not None:
            for node in handle.nodes:
                ports.release_ports(node.name)

        handle.is_ready = False

        if handle.topology.enable_cleanup:
            still_running = [node.name for node in handle.nodes if node.is_running()]
            if still_running:
                errors.append(f"Kept {handle.scratch_dir}: nodes still running: {', '.join(still_running)}")
            elif os.path.exists(handle.scratch_dir):
                try:
                    shutil.rmtree(handle.scratch_dir)
                    logger.info(f"Deleted scratch directory {handle.scratch_dir}")
                except OSError as e:
                    errors.append(f"Deleting {handle.scratch_dir} failed: {e}")

        for error in errors:
            logger.error(error)
        logger.info(f"Cluster {handle.run_id} torn down")
        return errors


@contextmanager
def cluster_session(topology: ClusterTopology, test_name: str = "harness",
                    orchestrator: Optional[ClusterOrchestrator] = None) -> Iterator[ClusterHandle]:
    """Scoped cluster: setup on entry, teardown on every exit path"""
    orchestrator = orchestrator or ClusterOrchestrator()
    handle = orchestrator.setup_cluster(topology, test_name)
    try:
        yield handle
    finally:
        orchestrator.teardown_cluster(handle)
