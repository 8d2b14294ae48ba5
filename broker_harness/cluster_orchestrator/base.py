"""
Base classes for Cluster Orchestrator components
"""
from abc import ABC
from typing import Dict, Optional
from ..interfaces import IClusterOrchestrator, ILogger
from ..models import BackoffConfig, ClusterHandle


class BaseClusterOrchestrator(IClusterOrchestrator, ABC):
    """Base implementation for cluster orchestration with common functionality"""

    def __init__(self, run_logger: Optional[ILogger] = None, backoff: Optional[BackoffConfig] = None):
        self.active_clusters: Dict[str, ClusterHandle] = {}
        self.run_logger = run_logger
        self.backoff = backoff or BackoffConfig()

