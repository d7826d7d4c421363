"""
Integration tests for the command line interface.
"""
from pathlib import Path

from click.testing import CliRunner

from apphost.CLI.main import cli

EXAMPLE = str(Path(__file__).resolve().parents[2] / "examples" / "apphost.yaml")

CYCLE = """
environments:
  - environments: [Production]
    services:
      - name: a
        wait_for: [b]
      - name: b
        wait_for: [a]
"""


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'Start services' in result.output


def test_cli_run_no_file():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', 'non_existent.yml', 'run'])
    assert result.exit_code == 3
    assert 'non_existent.yml: file not found' in result.output


def test_cli_validate():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', EXAMPLE, '-e', 'Development', 'validate'])
    assert result.exit_code == 0
    assert "Topology for 'Development' is valid: 2 service(s)." in result.output


def test_cli_graph():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', EXAMPLE, 'graph'])
    assert result.exit_code == 0
    assert 'Startup order: web-api, web-app' in result.output
    assert 'web-app --wait-for--> web-api' in result.output


def test_cli_endpoints():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', EXAMPLE, '-e', 'Development', 'endpoints'])
    assert result.exit_code == 0
    assert 'http://localhost:4000' in result.output
    assert 'https://localhost:7230' in result.output


def test_cli_run_unmatched_environment_is_noop():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', EXAMPLE, '-e', 'Staging', 'run'])
    assert result.exit_code == 0
    assert "No services defined for environment 'Staging'." in result.output


def test_cli_cycle_is_topology_error(tmp_path):
    path = tmp_path / "apphost.yaml"
    path.write_text(CYCLE)
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', str(path), 'run'])
    assert result.exit_code == 2
    assert 'Wait-for cycle detected' in result.output


def test_cli_environment_variable(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', EXAMPLE, 'validate'], env={'APPHOST_ENVIRONMENT': 'Development'})
    assert result.exit_code == 0
    assert "'Development'" in result.output
