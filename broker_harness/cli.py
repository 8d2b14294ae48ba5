#!/usr/bin/env python3
"""
Command-line interface for the Broker Harness
Provides commands for running scenario files and validating them.
"""
import sys
import argparse
import json
import yaml
import traceback
import logging
from pathlib import Path
from typing import Dict, Any, List
from datetime import datetime
from .main import BrokerHarness
from .models import RunResult, VerificationResult


class HarnessCLI:
    """Command-line interface for the Broker Harness"""

    def __init__(self, log_dir: str = None):
        self.harness = BrokerHarness(log_dir)

    def run_scenarios(self, args) -> int:
        """Run one or more scenario files in order"""
        self._print_header(f"Running {len(args.files)} scenario(s)")

        results = []
        for file in args.files:
            path = Path(file)
            if not path.exists():
                print(f"Error: Scenario file not found: {file}")
                print(f"\nMake sure the file path is correct.")
                print(f"Example: broker-harness run examples/loopback_group.yaml")
                return 1

            try:
                result = self.harness.run_scenario_file(path)
            except Exception as e:
                print(f"Error: Scenario {file} failed: {e}")
                print(f"\nTry validating your scenario file first: broker-harness validate {file}")
                if args.verbose:
                    traceback.print_exc()
                return 1

            results.append(result)
            if args.verbose:
                self._print_detailed_result(result)
            else:
                self._print_summary_result(result)

        if len(results) > 1:
            print(self.harness.report(results))

        if args.output:
            self._save_results(results, args.output, args.format)

        return 0 if all(r.success for r in results) else 1

    def validate_scenario(self, args) -> int:
        """Validate a scenario file"""
        self._print_header(f"Validating scenario: {args.file}")

        path = Path(args.file)
        if not path.exists():
            print(f"Error: Scenario file not found: {args.file}")
            print(f"\nMake sure the file path is correct.")
            print(f"Example: broker-harness validate examples/loopback_group.yaml")
            return 1

        try:
            scenario = self.harness.validate_scenario_file(path)
            print("Scenario parsed and validated successfully")

            topology = scenario.topology
            workload = scenario.workload
            print("\n" + "=" * 60)
            print("Scenario Summary")
            print("=" * 60)
            print(f"ID: {scenario.scenario_id}")
            print(f"Seed: {scenario.seed}")
            print(f"Topology: {len(topology.nodes)} nodes on the {topology.backend} backend")
            print(f"Workload: {workload.count} {workload.payload.kind.value} records, "
                  f"{workload.discipline.value} discipline")
            print(f"Consumers: {', '.join(scenario.consumers.members)} "
                  f"({scenario.consumers.ack_policy.value})")
            print(f"Guarantees: {', '.join(g.value for g in scenario.verification.guarantees)}")

            if args.verbose:
                print("\nNodes (start order):")
                for i, spec in enumerate(topology.start_order(), 1):
                    command = ' '.join(spec.command) if spec.command else '(loopback)'
                    print(f"  {i}. {spec.role.value} {spec.name or ''} {command}")

            print("\nScenario is valid!")
            return 0

        except Exception as e:
            print(f"\nError: Validation failed: {e}")
            print(f"\nCheck your scenario file syntax. See examples in the examples/ directory.")
            if args.verbose:
                traceback.print_exc()
            return 1

    def _print_header(self, title: str):
        """Print formatted header"""
        print()
        print("=" * 80)
        print(title)
        print("=" * 80)
        print()

    def _print_summary_result(self, result: RunResult):
        """Print summary of run result"""
        status = "PASSED" if result.success else "FAILED"
        duration = result.end_time - result.start_time

        print(f"\nScenario: {result.scenario_id}")
        print(f"Run: {result.run_id}")
        print(f"Status: {status}")
        print(f"Duration: {duration:.2f}s")
        print(f"Produced: {result.produced}")
        print(f"Observed: {result.observed}")

        if result.seed is not None:
            print(f"Seed: {result.seed} (use to reproduce)")

        failed = [v for v in result.verification_results if not v.passed]
        if result.verification_results:
            print(f"\nVerification: {len(result.verification_results) - len(failed)}/"
                  f"{len(result.verification_results)} guarantees held")
            if failed:
                print(f"Failed Guarantees: {', '.join(v.guarantee.value for v in failed)}")

        if result.error_message:
            print(f"Error ({result.error_category}): {result.error_message}")

    def _print_detailed_result(self, result: RunResult):
        """Print detailed run result when --verbose flag is specified"""
        self._print_summary_result(result)

        if result.verification_results:
            print("\nVerification Details:")
            for verification in result.verification_results:
                status = "[PASS]" if verification.passed else "[FAIL]"
                print(f"  {status} {verification.summary()}")
                for missing in verification.missing:
                    print(f"    - missing: {missing!r}")
                for unexpected in verification.unexpected:
                    print(f"    + unexpected: {unexpected!r}")

        if result.node_logs:
            print("\nNode Logs:")
            for node, path in result.node_logs.items():
                print(f"  {node}: {path}")

    def _save_results(self, results: List[RunResult], output_path: str, format: str):
        """Save run results to file"""
        try:
            output = Path(output_path)
            output.parent.mkdir(parents=True, exist_ok=True)

            data = {
                'timestamp': datetime.now().isoformat(),
                'total_runs': len(results),
                'passed': sum(1 for r in results if r.success),
                'failed': sum(1 for r in results if not r.success),
                'results': [self._result_to_dict(r) for r in results]
            }

            with open(output, 'w') as f:
                if format == 'json':
                    json.dump(data, f, indent=2)
                elif format == 'yaml':
                    yaml.dump(data, f, default_flow_style=False)

            print(f"\nResults saved to {output_path}")

        except (OSError, TypeError, yaml.YAMLError) as e:
            print(f"\nFailed to save results: {e}")

    def _result_to_dict(self, result: RunResult) -> Dict[str, Any]:
        """Convert RunResult to dictionary"""
        return {
            'scenario_id': result.scenario_id,
            'run_id': result.run_id,
            'success': result.success,
            'duration': result.end_time - result.start_time,
            'produced': result.produced,
            'observed': result.observed,
            'seed': result.seed,
            'error_message': result.error_message,
            'error_category': result.error_category,
            'node_logs': dict(result.node_logs),
            'verification': [self._verification_to_dict(v) for v in result.verification_results]
        }

    def _verification_to_dict(self, verification: VerificationResult) -> Dict[str, Any]:
        return {
            'guarantee': verification.guarantee.value,
            'passed': verification.passed,
            'expected_count': verification.expected_count,
            'observed_count': verification.observed_count,
            'missing_sample': [repr(m) for m in verification.missing],
            'unexpected_sample': [repr(u) for u in verification.unexpected],
            'message': verification.message
        }


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog='broker-harness',
        description='Broker Harness - Verify delivery guarantees of a streaming broker cluster',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a scenario
  broker-harness run examples/loopback_group.yaml

  # Run several scenarios and save results
  broker-harness run examples/*.yaml --output results.json

  # Verbose output with verification diffs
  broker-harness run examples/loopback_redelivery.yaml --verbose

  # Validate a scenario file
  broker-harness validate examples/loopback_group.yaml
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version='Broker Harness 0.1.0'
    )
    parser.add_argument(
        '--log-dir',
        type=str,
        help='Directory for run logs and persisted node logs'
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    run_parser = subparsers.add_parser(
        'run',
        help='Run one or more scenario files'
    )
    run_parser.add_argument(
        'files',
        nargs='+',
        metavar='FILE',
        help='Path to scenario YAML file(s)'
    )
    run_parser.add_argument(
        '--output',
        type=str,
        help='Path to save run results'
    )
    run_parser.add_argument(
        '--format',
        choices=['json', 'yaml'],
        default='json',
        help='Output format for results (default: json)'
    )
    run_parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    validate_parser = subparsers.add_parser(
        'validate',
        help='Validate a scenario file'
    )
    validate_parser.add_argument(
        'file',
        help='Path to scenario YAML file'
    )
    validate_parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    return parser


def main(argv=None):
    """Main entry point for CLI"""

    logging.basicConfig(
        level=logging.INFO,
        format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s',
        handlers=[logging.StreamHandler()]
    )

    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        print("Error: No command specified\n")
        parser.print_help()
        print("\nCommon commands:")
        print("  broker-harness run <scenario.yaml>        # Run a scenario")
        print("  broker-harness validate <scenario.yaml>   # Validate a scenario file")
        return 1

    cli = HarnessCLI(args.log_dir)

    try:
        if args.command == 'run':
            return cli.run_scenarios(args)
        elif args.command == 'validate':
            return cli.validate_scenario(args)
    except KeyboardInterrupt:
        print("\n\nBroker harness was interrupted by user")
        return 130
    except Exception as e:
        print(f"\nUnexpected error: {e}")
        if hasattr(args, 'verbose') and args.verbose:
            traceback.print_exc()
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
