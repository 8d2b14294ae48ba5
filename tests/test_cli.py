"""
Tests for CLI functionality
"""
import pytest
import json
import yaml
from unittest.mock import Mock, patch

from broker_harness.cli import HarnessCLI, create_parser, main
from broker_harness.models import Guarantee, RunResult, VerificationResult


@pytest.fixture
def mock_result():
    """Create a RunResult with one failed guarantee"""
    return RunResult(
        scenario_id="loopback-group",
        run_id="abcd1234",
        success=False,
        start_time=1000.0,
        end_time=1015.5,
        produced=600,
        observed=599,
        verification_results=[
            VerificationResult(Guarantee.EXACT_MULTISET, False, 600, 599, missing=[b"\x01"],
                               message="1 missing, 0 unexpected"),
            VerificationResult(Guarantee.ZERO_OVERLAP, True, 600, 599)
        ],
        error_message="exact_multiset: FAILED",
        error_category="verification_mismatch",
        node_logs={'broker-0': '/tmp/logs/abcd1234-broker-0.log'},
        seed=42
    )


def write_scenario(path, **overrides):
    scenario = {
        'scenario_id': 'cli-test',
        'seed': 3,
        'topology': {'backend': 'loopback', 'brokers': 2},
        'workload': {'count': 5},
        'consumers': {'members': ['c1']},
    }
    scenario.update(overrides)
    path.write_text(yaml.dump(scenario))
    return path


class TestHarnessCLI:
    """Test HarnessCLI class"""

    def test_print_summary_result(self, tmp_path, mock_result, capsys):
        """Test printing summary result"""
        cli = HarnessCLI(str(tmp_path))
        cli._print_summary_result(mock_result)

        captured = capsys.readouterr()
        assert "loopback-group" in captured.out
        assert "FAILED" in captured.out
        assert "15.50s" in captured.out
        assert "Seed: 42" in captured.out
        assert "1/2 guarantees held" in captured.out
        assert "Failed Guarantees: exact_multiset" in captured.out

    def test_print_detailed_result(self, tmp_path, mock_result, capsys):
        cli = HarnessCLI(str(tmp_path))
        cli._print_detailed_result(mock_result)

        captured = capsys.readouterr()
        assert "[FAIL] exact_multiset" in captured.out
        assert "[PASS] zero_overlap" in captured.out
        assert "missing: b'\\x01'" in captured.out
        assert "broker-0: /tmp/logs/abcd1234-broker-0.log" in captured.out

    def test_save_results_json(self, tmp_path, mock_result):
        """Test saving results as JSON"""
        cli = HarnessCLI(str(tmp_path))
        output_file = tmp_path / "out" / "results.json"

        cli._save_results([mock_result], str(output_file), 'json')

        with open(output_file) as f:
            data = json.load(f)
        assert data['total_runs'] == 1
        assert data['failed'] == 1
        result = data['results'][0]
        assert result['run_id'] == "abcd1234"
        assert result['duration'] == 15.5
        assert result['verification'][0]['missing_sample'] == ["b'\\x01'"]

    def test_save_results_yaml(self, tmp_path, mock_result):
        """Test saving results as YAML"""
        cli = HarnessCLI(str(tmp_path))
        output_file = tmp_path / "results.yaml"

        cli._save_results([mock_result], str(output_file), 'yaml')

        with open(output_file) as f:
            data = yaml.safe_load(f)
        assert data['passed'] == 0
        assert data['results'][0]['verification'][1]['guarantee'] == "zero_overlap"

    def test_validate_scenario(self, tmp_path, capsys):
        scenario_file = write_scenario(tmp_path / "scenario.yaml")
        cli = HarnessCLI(str(tmp_path))
        args = Mock(file=str(scenario_file), verbose=True)

        assert cli.validate_scenario(args) == 0
        captured = capsys.readouterr()
        assert "Scenario is valid!" in captured.out
        assert "2 nodes on the loopback backend" in captured.out
        assert "(loopback)" in captured.out

    def test_validate_invalid_scenario(self, tmp_path, capsys):
        scenario_file = write_scenario(tmp_path / "bad.yaml", consumers={'members': []})
        cli = HarnessCLI(str(tmp_path))

        assert cli.validate_scenario(Mock(file=str(scenario_file), verbose=False)) == 1
        assert "consumers.members" in capsys.readouterr().out

    def test_validate_missing_file(self, tmp_path, capsys):
        cli = HarnessCLI(str(tmp_path))
        assert cli.validate_scenario(Mock(file=str(tmp_path / "nope.yaml"), verbose=False)) == 1
        assert "not found" in capsys.readouterr().out

    def test_run_scenarios_missing_file(self, tmp_path):
        cli = HarnessCLI(str(tmp_path))
        args = Mock(files=[str(tmp_path / "nope.yaml")], verbose=False, output=None, format='json')
        assert cli.run_scenarios(args) == 1

    def test_run_scenarios_exit_code_follows_results(self, tmp_path, mock_result):
        scenario_file = write_scenario(tmp_path / "scenario.yaml")
        cli = HarnessCLI(str(tmp_path))
        args = Mock(files=[str(scenario_file), str(scenario_file)], verbose=False,
                    output=str(tmp_path / "results.json"), format='json')

        passed = RunResult("cli-test", "r1", True, 0.0, 1.0)
        with patch.object(cli.harness, 'run_scenario_file', side_effect=[passed, mock_result]):
            assert cli.run_scenarios(args) == 1

        with open(tmp_path / "results.json") as f:
            assert json.load(f)['total_runs'] == 2

    def test_run_scenarios_loopback_end_to_end(self, tmp_path, capsys):
        scenario_file = write_scenario(
            tmp_path / "scenario.yaml",
            topology={'backend': 'loopback', 'brokers': 2,
                      'base_data_dir': str(tmp_path / "data"), 'log_dir': str(tmp_path / "logs")}
        )
        cli = HarnessCLI(str(tmp_path / "logs"))
        args = Mock(files=[str(scenario_file)], verbose=True, output=None, format='json')

        assert cli.run_scenarios(args) == 0
        assert "PASSED" in capsys.readouterr().out


class TestArgumentParser:
    """Test argument parser"""

    def test_run_command(self):
        parser = create_parser()
        args = parser.parse_args(['run', 'a.yaml', 'b.yaml', '--output', 'r.yaml', '--format', 'yaml'])
        assert args.command == 'run'
        assert args.files == ['a.yaml', 'b.yaml']
        assert args.output == 'r.yaml'
        assert args.format == 'yaml'
        assert args.verbose is False

    def test_validate_command(self):
        args = create_parser().parse_args(['--log-dir', '/tmp/x', 'validate', 's.yaml', '--verbose'])
        assert args.command == 'validate'
        assert args.file == 's.yaml'
        assert args.log_dir == '/tmp/x'
        assert args.verbose is True

    def test_run_requires_file(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(['run'])

    def test_bad_format_rejected(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(['run', 'a.yaml', '--format', 'xml'])


class TestMain:

    def test_no_command(self, capsys):
        assert main([]) == 1
        assert "No command specified" in capsys.readouterr().out

    def test_keyboard_interrupt(self, tmp_path):
        with patch('broker_harness.cli.HarnessCLI.validate_scenario', side_effect=KeyboardInterrupt):
            assert main(['--log-dir', str(tmp_path), 'validate', 'x.yaml']) == 130

    def test_validate_via_main(self, tmp_path):
        scenario_file = write_scenario(tmp_path / "scenario.yaml")
        assert main(['--log-dir', str(tmp_path), 'validate', str(scenario_file)]) == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
