import json
from unittest import mock

import pytest
from typer.testing import CliRunner

from flexnode import __version__, cli
from flexnode.errors import BootstrapError
from flexnode.modules.bootstrapper import ExecutionResult, StepResult

runner = CliRunner()


@pytest.fixture(autouse=True)
def no_signal_handlers(monkeypatch):
    monkeypatch.setattr(cli, "install_signal_handlers", lambda token: None)


@pytest.fixture
def config_file(config_data, tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config_data))
    return str(path)


def test_help():
    result = runner.invoke(cli.app, ["--help"])

    assert result.exit_code == 0
    assert "agent" in result.stdout
    assert "unbootstrap" in result.stdout
    assert "version" in result.stdout


def test_version():
    result = runner.invoke(cli.app, ["version"])

    assert result.exit_code == 0
    assert f"Version: {__version__}" in result.stdout
    assert "Git Commit:" in result.stdout
    assert "Build Time:" in result.stdout


def test_agent_requires_config():
    result = runner.invoke(cli.app, ["agent"])

    assert result.exit_code != 0


def test_agent_invalid_config_exits_1(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{}")

    result = runner.invoke(cli.app, ["agent", "--config", str(path)])

    assert result.exit_code == 1


def test_agent_bootstrap_failure_exits_1(config_file):
    with mock.patch("flexnode.commands.agent.Bootstrapper") as bootstrapper, \
            mock.patch("flexnode.commands.agent.DaemonLoop") as daemon:
        bootstrapper.return_value.bootstrap.side_effect = BootstrapError("bootstrap failed at step ArcInstall: denied")

        result = runner.invoke(cli.app, ["agent", "--config", config_file])

    assert result.exit_code == 1
    daemon.assert_not_called()


def test_agent_enters_daemon_after_bootstrap(config_file):
    with mock.patch("flexnode.commands.agent.Bootstrapper") as bootstrapper, \
            mock.patch("flexnode.commands.agent.DaemonLoop") as daemon:
        bootstrapper.return_value.bootstrap.return_value = ExecutionResult(success=True, step_count=10)

        result = runner.invoke(cli.app, ["--debug", "agent", "--config", config_file])

    assert result.exit_code == 0
    daemon.return_value.run.assert_called_once()


def test_unbootstrap_partial_failure_exits_0(config_file):
    partial = ExecutionResult(
        success=False,
        step_count=8,
        step_results=(StepResult(name="ArcUnbootstrap", success=False, error="boom"),),
        error="completed with 1 failed steps out of 8 total steps",
    )
    with mock.patch("flexnode.commands.unbootstrap.Bootstrapper") as bootstrapper:
        bootstrapper.return_value.unbootstrap.return_value = partial

        result = runner.invoke(cli.app, ["unbootstrap", "--config", config_file])

    assert result.exit_code == 0
    bootstrapper.return_value.unbootstrap.assert_called_once()
