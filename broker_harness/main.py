"""
Main entry point for the Broker Harness
"""
from pathlib import Path
from typing import Optional, Union
from .models import Scenario, RunResult
from .harness import ScenarioRunner, ScenarioLoader, RunLogger


class BrokerHarness:
    """Main orchestrator for the broker verification harness"""

    def __init__(self, log_dir: Optional[str] = None):
        """
        Initialize the harness with a scenario runner
        """
        self.run_logger = RunLogger(log_dir) if log_dir else RunLogger()
        self.runner = ScenarioRunner(run_logger=self.run_logger)
        self.last_scenario: Optional[Scenario] = None

    def run_scenario(self, scenario: Scenario) -> RunResult:
        """
        Run a scenario end-to-end.
        """
        self.last_scenario = scenario
        return self.runner.run(scenario)

    def run_scenario_file(self, file_path: Union[str, Path]) -> RunResult:
        """
        Load and run a YAML scenario file.
        """
        return self.run_scenario(ScenarioLoader.load_from_file(file_path))

    def validate_scenario_file(self, file_path: Union[str, Path]) -> Scenario:
        """
        Load and validate a scenario file without running it.
        """
        return ScenarioLoader.load_from_file(file_path)

    def report(self, results) -> str:
        return self.run_logger.generate_report(results)
