"""
Tests for CLI commands and the provisioning use cases behind them.
"""

import json
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from server_forge.adapters.filesystem import LocalFilesystem
from server_forge.adapters.mock import MockInvoker
from server_forge.core.models.record import RunStatus
from server_forge.core.use_cases.provision import (
    STATE_DIR_ENV,
    run_provisioning,
    state_directory,
)
from server_forge.main import cli


@pytest.fixture(autouse=True)
def _no_state_override(monkeypatch):
    monkeypatch.delenv(STATE_DIR_ENV, raising=False)


def _make_config(tmp_path: Path, extra: str = "") -> Path:
    content = textwrap.dedent("""\
        server:
          distro_family: ubuntu
          server_role: web
          security_level: basic
          applications:
            - nginx
    """) + extra
    config = tmp_path / "server-forge.yml"
    config.write_text(content)
    return config


def _invoke(config: Path, *args: str):
    return CliRunner().invoke(cli, ["--config", str(config), *args])


class TestCLIGlobal:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "rollback" in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestPlanCommand:
    def test_lists_steps_in_order(self, tmp_path: Path):
        result = _invoke(_make_config(tmp_path), "plan")

        assert result.exit_code == 0
        assert result.output.index("system_update") < result.output.index("ssh_hardening")
        assert "app:nginx" in result.output

    def test_json(self, tmp_path: Path):
        result = _invoke(_make_config(tmp_path), "plan", "--json")

        data = json.loads(result.output)
        assert data["distro_family"] == "apt"
        assert data["plan"][0]["id"] == "system_update"
        assert data["plan"][0]["exclusive"] is True

    def test_missing_config(self, tmp_path: Path):
        result = _invoke(tmp_path / "absent.yml", "plan")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_unknown_application(self, tmp_path: Path):
        config = tmp_path / "server-forge.yml"
        config.write_text("distro_family: apt\napplications: [oracle]\n")

        result = _invoke(config, "plan")

        assert result.exit_code == 1
        assert "Unknown application" in result.output


class TestRunCommand:
    def test_mock_run(self, tmp_path: Path):
        result = _invoke(_make_config(tmp_path), "run", "--mock")

        assert result.exit_code == 0
        assert "step(s) applied" in result.output
        assert list((tmp_path / ".state" / "runs").glob("*.ndjson"))
        assert (tmp_path / ".state" / "mock-root" / "etc" / "ssh" / "sshd_config").is_file()

    def test_dry_run_lists_commands(self, tmp_path: Path):
        result = _invoke(_make_config(tmp_path), "run", "--dry-run")

        assert result.exit_code == 0
        assert "$ apt-get update" in result.output
        # A dry run answers queries like a fresh host, so installs show up
        assert "$ apt-get install -y nginx" in result.output
        assert "$ systemctl enable nginx" in result.output
        assert not (tmp_path / ".state").exists()

    def test_quiet_run_lists_only_problems(self, tmp_path: Path):
        config = _make_config(tmp_path)
        result = CliRunner().invoke(cli, ["--quiet", "--config", str(config), "run", "--mock"])

        assert result.exit_code == 0
        assert "ssh_hardening" not in result.output
        assert "step(s) applied" in result.output

    def test_json_run(self, tmp_path: Path):
        result = _invoke(_make_config(tmp_path), "run", "--mock", "--json", "--workers", "2")

        data = json.loads(result.output)
        assert result.exit_code == 0
        assert data["run"]["status"] == "success"
        assert data["run"]["rollback"] is None


class TestLogAndRollback:
    def _run(self, config: Path) -> str:
        result = _invoke(config, "run", "--mock", "--json")
        return json.loads(result.output)["run"]["run_id"]

    def test_log_lists_runs(self, tmp_path: Path):
        config = _make_config(tmp_path)
        run_id = self._run(config)

        result = _invoke(config, "log", "--json")

        assert json.loads(result.output) == {"runs": [run_id]}

    def test_log_shows_one_run(self, tmp_path: Path):
        config = _make_config(tmp_path)
        run_id = self._run(config)

        result = _invoke(config, "log", run_id)

        assert result.exit_code == 0
        assert "ssh_hardening" in result.output
        assert "completed" in result.output

    def test_log_unknown_run(self, tmp_path: Path):
        result = _invoke(_make_config(tmp_path), "log", "run-missing")
        assert result.exit_code == 1

    def test_rollback_previous_run(self, tmp_path: Path):
        config = _make_config(tmp_path)
        run_id = self._run(config)

        result = _invoke(config, "rollback", run_id, "--mock", "--json")

        data = json.loads(result.output)
        assert result.exit_code == 0
        assert data["rollback"]["status"] == "fully_rolled_back"
        assert not (tmp_path / ".state" / "mock-root" / "etc" / "ssh" / "sshd_config").exists()


class TestRunProvisioning:
    def test_failure_exit_code(self, tmp_path: Path):
        config = _make_config(tmp_path)
        invoker = MockInvoker()
        invoker.set_failure("dpkg -s nginx")
        invoker.set_failure("apt-get install -y nginx")

        result = run_provisioning(
            config_path=config,
            invoker=invoker,
            filesystem=LocalFilesystem(root=tmp_path / "root"),
            max_workers=1,
        )

        assert result.run.status == RunStatus.ROLLED_BACK
        assert result.run.failed_step == "app:nginx"
        assert result.exit_code == 1

    def test_partial_change_exit_code(self, tmp_path: Path):
        config = _make_config(tmp_path)
        invoker = MockInvoker()
        invoker.set_failure("systemctl is-enabled --quiet nginx")
        invoker.set_failure("systemctl is-active --quiet nginx")
        invoker.set_failure("systemctl start nginx")
        invoker.set_failure("systemctl disable nginx")

        result = run_provisioning(
            config_path=config,
            invoker=invoker,
            filesystem=LocalFilesystem(root=tmp_path / "root"),
            max_workers=1,
        )

        assert result.run.status == RunStatus.ROLLBACK_FAILED
        assert result.run.failed_step == "app:nginx:service"
        remediation = {r.step_id: r for r in result.run.rollback.remediation}
        assert "disable nginx" in remediation["app:nginx:service"].error
        assert "app:nginx" in remediation
        assert result.exit_code == 2

    def test_dry_run_keeps_injected_invoker(self, tmp_path: Path):
        invoker = MockInvoker()

        result = run_provisioning(config_path=_make_config(tmp_path), dry_run=True, invoker=invoker)

        assert result.run.ok
        assert "apt-get install -y nginx" not in result.commands

    def test_state_directory_override(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv(STATE_DIR_ENV, str(tmp_path / "elsewhere"))
        assert state_directory(_make_config(tmp_path)) == tmp_path / "elsewhere"

    def test_state_directory_beside_config(self, tmp_path: Path):
        config = _make_config(tmp_path)
        assert state_directory(config) == config.resolve().parent / ".state" / "runs"
