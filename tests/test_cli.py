"""Tests for CLI commands.

Runs the real commands against local-transport targets living in the test's
temporary directory.
"""

import json
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from click.testing import CliRunner

from deployctl import __version__
from deployctl.cli import cli
from deployctl.deploy.state import BackupStore, ReportStore

DEPLOY_API = {
    "name": "deploy-api",
    "services": ["api"],
    "actions": [
        {"type": "transfer", "artifact": "api-jar"},
        {"type": "execute", "command": "test -f {{ artifacts['api-jar'].destination }}", "restart": True},
    ],
}


def invoke(cli_runner, config_file, *args, **kwargs):
    return cli_runner.invoke(cli, ["--no-color", "-c", config_file, *args], **kwargs)


# =============================================================================
# CLI Entry Point
# =============================================================================


class TestCLIEntryPoint:
    """Tests for main CLI entry point, flags, and options."""

    def test_help(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "rollback", "status", "history", "backups", "plan", "config"):
            assert command in result.output

    def test_version(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert f"deployctl version {__version__}" in result.output

    def test_invalid_output_format(self, cli_runner: CliRunner):
        result = cli_runner.invoke(cli, ["-o", "xml", "config"])
        assert result.exit_code == 2
        assert "Invalid format" in result.output

    def test_dry_run_banner(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "--dry-run", "config")
        assert result.exit_code == 0
        assert "Dry-run mode enabled" in result.output

    def test_config_json(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "-o", "json", "config")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["environments"] == {"staging": ["api", "web"]}
        assert data["health"]["max_attempts"] == 3

    def test_invalid_config_file(self, cli_runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("health: {max_attempts: 0}\n")
        result = cli_runner.invoke(cli, ["-c", str(path), "config"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output


# =============================================================================
# deploy run
# =============================================================================


class TestRunCommand:
    """Tests for ``deploy run``."""

    def test_success(self, cli_runner, config_file, write_plan, hosts, config):
        plan = write_plan([DEPLOY_API])

        result = invoke(cli_runner, config_file, "run", "--plan", str(plan))

        assert result.exit_code == 0, result.output
        assert "deploy-api" in result.output
        assert "SUCCESS" in result.output
        assert (hosts["api"] / "app" / "api.jar").read_text() == "api v2"
        assert ReportStore(config.get_state_dir()).latest().overall_status.value == "success"

    def test_health_checked_run(self, cli_runner, config_file, write_plan):
        stage = {**DEPLOY_API, "actions": DEPLOY_API["actions"] + [{"type": "health_check", "path": "/health"}]}
        plan = write_plan([stage])

        with patch("deployctl.deploy.health.httpx.get", return_value=httpx.Response(200, text="UP")) as mock_get:
            result = invoke(cli_runner, config_file, "run", "-p", str(plan))

        assert result.exit_code == 0, result.output
        assert mock_get.call_args[0][0] == "http://api.staging.internal:8080/health"

    def test_critical_failure_exits_1(self, cli_runner, config_file, write_plan, hosts):
        plan = write_plan(
            [
                DEPLOY_API,
                {"name": "migrate", "services": ["api"], "actions": [{"type": "execute", "command": "exit 7"}]},
            ]
        )

        result = invoke(cli_runner, config_file, "run", "--plan", str(plan))

        assert result.exit_code == 1
        assert "FAILURE" in result.output
        assert "Rollbacks" in result.output
        # first deploy: rolling back removes what was deployed
        assert not (hosts["api"] / "app" / "api.jar").exists()

    def test_json_output(self, cli_runner, config_file, write_plan):
        plan = write_plan([DEPLOY_API])

        result = invoke(cli_runner, config_file, "-q", "-o", "json", "run", "--plan", str(plan))

        assert result.exit_code == 0
        report = json.loads(result.output)
        assert report["overall_status"] == "success"
        assert report["stage_states"] == {"deploy-api": "succeeded"}

    def test_unknown_service_exits_1(self, cli_runner, config_file, write_plan):
        plan = write_plan([{**DEPLOY_API, "services": ["billing"]}])

        result = invoke(cli_runner, config_file, "run", "--plan", str(plan))

        assert result.exit_code == 1
        assert "billing" in result.output

    def test_invalid_plan_exits_1(self, cli_runner, config_file, write_plan):
        plan = write_plan([{"name": "bad", "services": ["api"], "actions": [{"type": "transfer"}]}])

        result = invoke(cli_runner, config_file, "run", "--plan", str(plan))

        assert result.exit_code == 1
        assert "Invalid plan" in result.output

    def test_protected_environment_declined(self, cli_runner, config_file, write_plan, hosts):
        plan = write_plan([DEPLOY_API], environment="production")

        result = invoke(cli_runner, config_file, "run", "--plan", str(plan), input="n\n")

        assert result.exit_code == 2
        assert "Cancelled" in result.output
        assert not (hosts["api"] / "app" / "api.jar").exists()

    def test_dry_run_touches_nothing(self, cli_runner, config_file, write_plan, hosts):
        plan = write_plan([DEPLOY_API])

        result = invoke(cli_runner, config_file, "--dry-run", "run", "--plan", str(plan))

        assert result.exit_code == 0
        assert "dry run" in result.output
        assert not (hosts["api"] / "app" / "api.jar").exists()

    def test_env_flag_overrides_plan(self, cli_runner, config_file, write_plan):
        plan = write_plan([DEPLOY_API])

        result = invoke(cli_runner, config_file, "run", "--plan", str(plan), "--env", "qa")

        assert result.exit_code == 1
        assert "qa" in result.output


# =============================================================================
# deploy status / history
# =============================================================================


class TestStatusCommands:
    """Tests for ``deploy status`` and ``deploy history``."""

    def test_status_without_runs(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "status")
        assert result.exit_code == 0
        assert "No deployment runs recorded" in result.output

    def test_status_of_latest_and_by_id(self, cli_runner, config_file, write_plan, config):
        invoke(cli_runner, config_file, "run", "--plan", str(write_plan([DEPLOY_API])))
        run_id = ReportStore(config.get_state_dir()).latest().run_id

        latest = invoke(cli_runner, config_file, "status")
        by_id = invoke(cli_runner, config_file, "status", "--run", run_id)

        assert latest.exit_code == 0
        assert run_id in latest.output
        assert by_id.exit_code == 0
        assert run_id in by_id.output

    def test_status_unknown_run(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "status", "--run", "nope")
        assert result.exit_code == 1
        assert "Run not found" in result.output

    def test_history(self, cli_runner, config_file, write_plan):
        plan = str(write_plan([DEPLOY_API]))
        invoke(cli_runner, config_file, "run", "--plan", plan)
        invoke(cli_runner, config_file, "run", "--plan", plan)

        result = invoke(cli_runner, config_file, "-o", "json", "history")

        assert result.exit_code == 0
        runs = json.loads(result.output)
        assert len(runs) == 2
        assert {r["status"] for r in runs} == {"success"}


# =============================================================================
# deploy rollback
# =============================================================================


class TestRollbackCommand:
    """Tests for ``deploy rollback``."""

    @pytest.fixture
    def deployed(self, cli_runner, config_file, write_plan, hosts):
        """Deploy v2 over an existing v1."""
        (hosts["api"] / "app" / "api.jar").write_text("api v1")
        result = invoke(cli_runner, config_file, "run", "--plan", str(write_plan([DEPLOY_API])))
        assert result.exit_code == 0, result.output
        return hosts["api"] / "app" / "api.jar"

    def test_restores_latest_backup(self, cli_runner, config_file, deployed):
        assert deployed.read_text() == "api v2"

        result = invoke(cli_runner, config_file, "rollback", "--target", "staging/api", "-y")

        assert result.exit_code == 0, result.output
        assert "Rolled back api-jar" in result.output
        assert deployed.read_text() == "api v1"

    def test_by_backup_id(self, cli_runner, config_file, deployed, config):
        record = BackupStore(config.get_state_dir()).latest("staging/api")

        result = invoke(
            cli_runner, config_file, "-o", "json", "rollback", "-t", "staging/api", "-b", record.id, "-y"
        )

        assert result.exit_code == 0
        assert json.loads(result.output)["success"] is True
        assert deployed.read_text() == "api v1"

    def test_backup_of_other_target(self, cli_runner, config_file, deployed, config):
        record = BackupStore(config.get_state_dir()).latest("staging/api")

        result = invoke(cli_runner, config_file, "rollback", "-t", "staging/web", "-b", record.id, "-y")

        assert result.exit_code == 1
        assert "belongs to staging/api" in result.output

    def test_no_backups(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "rollback", "--target", "staging/api", "-y")
        assert result.exit_code == 1
        assert "No confirmed backups recorded" in result.output

    def test_dry_run(self, cli_runner, config_file, deployed):
        result = invoke(cli_runner, config_file, "--dry-run", "rollback", "--target", "staging/api")

        assert result.exit_code == 0
        assert "[dry-run] rollback api-jar" in result.output
        assert deployed.read_text() == "api v2"

    def test_missing_backup_file_exits_3(self, cli_runner, config_file, deployed, config):
        record = BackupStore(config.get_state_dir()).latest("staging/api")
        Path(record.backup_path).unlink()

        result = invoke(cli_runner, config_file, "rollback", "--target", "staging/api", "-y")

        assert result.exit_code == 3
        assert "ALERT" in result.output
        assert deployed.read_text() == "api v2"


# =============================================================================
# deploy backups
# =============================================================================


class TestBackupsCommands:
    """Tests for ``deploy backups``."""

    def test_list_empty(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "backups", "list")
        assert result.exit_code == 0
        assert "No backups recorded" in result.output

    def test_list(self, cli_runner, config_file, write_plan, hosts):
        (hosts["api"] / "app" / "api.jar").write_text("api v1")
        invoke(cli_runner, config_file, "run", "--plan", str(write_plan([DEPLOY_API])))

        result = invoke(cli_runner, config_file, "-o", "json", "backups", "list", "--target", "staging/api")

        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert len(rows) == 1
        assert rows[0]["artifact"] == "api-jar"
        assert rows[0]["verified"] == "yes"

    def test_prune_dry_run(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "--dry-run", "backups", "prune", "--keep", "0")
        assert result.exit_code == 0
        assert "[dry-run] prune backups" in result.output

    def test_prune(self, cli_runner, config_file, write_plan, hosts, config):
        (hosts["api"] / "app" / "api.jar").write_text("api v1")
        invoke(cli_runner, config_file, "run", "--plan", str(write_plan([DEPLOY_API])))

        result = invoke(cli_runner, config_file, "backups", "prune", "--keep", "0", "-y")

        assert result.exit_code == 0
        assert "Pruned 1 backup(s)" in result.output
        assert BackupStore(config.get_state_dir()).list() == []

    def test_prune_rejects_negative_keep(self, cli_runner, config_file):
        result = invoke(cli_runner, config_file, "backups", "prune", "--keep", "-1", "-y")
        assert result.exit_code == 2


# =============================================================================
# deploy plan
# =============================================================================


class TestPlanCommands:
    """Tests for ``deploy plan``."""

    def test_validate(self, cli_runner, config_file, write_plan):
        result = invoke(cli_runner, config_file, "plan", "validate", "--plan", str(write_plan([DEPLOY_API])))

        assert result.exit_code == 0
        assert "Plan is valid (1 service(s): api)" in result.output
        assert "deploy-api" in result.output

    def test_validate_unknown_service(self, cli_runner, config_file, write_plan):
        plan = write_plan([{**DEPLOY_API, "services": ["billing"]}])

        result = invoke(cli_runner, config_file, "plan", "validate", "--plan", str(plan))

        assert result.exit_code == 1
        assert "Unknown service 'billing'" in result.output

    def test_validate_warns_about_unbuilt_artifacts(self, cli_runner, config_file, write_plan, build_dir):
        (build_dir / "api.jar").unlink()

        result = invoke(cli_runner, config_file, "plan", "validate", "--plan", str(write_plan([DEPLOY_API])))

        assert result.exit_code == 0
        assert "not built yet" in result.output

    def test_check_local_targets(self, cli_runner, config_file, write_plan):
        result = invoke(cli_runner, config_file, "plan", "check", "--plan", str(write_plan([DEPLOY_API])))

        assert result.exit_code == 0
        assert "staging/api" in result.output
        assert "reachable" in result.output
