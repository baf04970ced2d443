"""Tests for plan loading and target resolution."""

from pathlib import Path

import pytest
import yaml

from deployctl.config import DeployCtlConfig, EnvironmentConfig, ServiceTargetConfig
from deployctl.core.exceptions import ConfigError, PlanError, UnknownServiceError
from deployctl.deploy.models import ActionType, ArtifactKind, Criticality
from deployctl.deploy.resolver import TargetResolver
from deployctl.deploy.schema import load_plan, render_command, validate_plan


def plan_dict(**overrides):
    plan = {
        "name": "release",
        "environment": "staging",
        "artifacts": [{"name": "api-jar", "path": "build/api.jar"}],
        "stages": [
            {
                "name": "deploy-api",
                "services": ["api"],
                "actions": [
                    {"type": "transfer", "artifact": "api-jar"},
                    {"type": "execute", "command": "systemctl restart api", "restart": True},
                    {"type": "health_check", "path": "/health"},
                ],
            }
        ],
    }
    plan.update(overrides)
    return plan


class TestPlanSchema:
    def test_valid_plan(self):
        schema = validate_plan(plan_dict())
        assert schema.stages[0].criticality == "critical"
        assert schema.stages[0].parallel is False

    def test_targets_alias(self):
        data = plan_dict()
        stage = data["stages"][0]
        stage["targets"] = stage.pop("services")
        assert validate_plan(data).stages[0].services == ["api"]

    def test_unknown_artifact_reference(self):
        data = plan_dict(artifacts=[])
        with pytest.raises(ValueError, match="unknown artifact 'api-jar'"):
            validate_plan(data)

    def test_duplicate_stage_names(self):
        data = plan_dict()
        data["stages"] = data["stages"] * 2
        with pytest.raises(ValueError, match="duplicate stage names: deploy-api"):
            validate_plan(data)

    def test_duplicate_services(self):
        data = plan_dict()
        data["stages"][0]["services"] = ["api", "api"]
        with pytest.raises(ValueError, match="must not repeat"):
            validate_plan(data)

    @pytest.mark.parametrize(
        "action,message",
        [
            ({"type": "transfer"}, "requires 'artifact'"),
            ({"type": "execute"}, "requires 'command'"),
            ({"type": "execute", "command": "echo {{ unclosed"}, "invalid command template"),
            ({"type": "health_check", "url": "http://x", "path": "/y"}, "not both"),
            ({"type": "health_check", "expected_status": [500, 200]}, "low bound"),
            ({"type": "execute", "command": "true", "timeout": 0}, "greater than 0"),
            ({"type": "reboot"}, "type"),
        ],
    )
    def test_invalid_actions(self, action, message):
        data = plan_dict()
        data["stages"][0]["actions"] = [action]
        with pytest.raises(ValueError, match=message):
            validate_plan(data)

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError):
            validate_plan(plan_dict(retries=3))

    def test_stage_needs_actions(self):
        data = plan_dict()
        data["stages"][0]["actions"] = []
        with pytest.raises(ValueError):
            validate_plan(data)

    def test_remote_name_must_be_plain(self):
        data = plan_dict(artifacts=[{"name": "api-jar", "path": "a.jar", "remote_name": "../x"}])
        with pytest.raises(ValueError, match="plain file name"):
            validate_plan(data)


class TestLoadPlan:
    def write(self, tmp_path: Path, data) -> Path:
        path = tmp_path / "plan.yaml"
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    def test_builds_immutable_plan(self, tmp_path):
        plan = load_plan(self.write(tmp_path, plan_dict()))

        assert plan.name == "release"
        assert plan.environment == "staging"
        assert plan.artifacts["api-jar"].local_path == tmp_path.resolve() / "build" / "api.jar"
        assert plan.artifacts["api-jar"].kind == ArtifactKind.BINARY
        stage = plan.stages[0]
        assert stage.criticality == Criticality.CRITICAL
        assert [a.type for a in stage.actions] == [
            ActionType.TRANSFER,
            ActionType.EXECUTE,
            ActionType.HEALTH_CHECK,
        ]
        assert stage.actions[1].requires_backup
        assert plan.services() == ["api"]
        with pytest.raises(AttributeError):
            plan.name = "other"

    def test_environment_override(self, tmp_path):
        plan = load_plan(self.write(tmp_path, plan_dict()), environment="production")
        assert plan.environment == "production"

    def test_environment_from_env_var(self, tmp_path, monkeypatch):
        data = plan_dict()
        del data["environment"]
        monkeypatch.setenv("DEPLOYCTL_ENV", "qa")
        assert load_plan(self.write(tmp_path, data)).environment == "qa"

    def test_environment_required(self, tmp_path):
        data = plan_dict()
        del data["environment"]
        with pytest.raises(PlanError, match="No environment"):
            load_plan(self.write(tmp_path, data))

    def test_name_defaults_to_file_stem(self, tmp_path):
        data = plan_dict()
        del data["name"]
        assert load_plan(self.write(tmp_path, data)).name == "plan"

    def test_missing_file(self, tmp_path):
        with pytest.raises(PlanError, match="Cannot read plan"):
            load_plan(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "plan.yaml"
        path.write_text("stages: [unclosed")
        with pytest.raises(PlanError, match="Invalid YAML"):
            load_plan(path)

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(PlanError, match="mapping"):
            load_plan(self.write(tmp_path, ["deploy-api"]))

    def test_schema_error_wrapped(self, tmp_path):
        with pytest.raises(PlanError, match="Invalid plan") as exc_info:
            load_plan(self.write(tmp_path, plan_dict(stages=[])))
        assert exc_info.value.path.endswith("plan.yaml")


class TestRenderCommand:
    def test_renders_context(self):
        rendered = render_command(
            "deploy.sh {{ target.service_id }} {{ vars.version }}",
            {"target": {"service_id": "api"}, "vars": {"version": "2.0.0"}},
        )
        assert rendered == "deploy.sh api 2.0.0"

    def test_undefined_variable(self):
        with pytest.raises(PlanError, match="Cannot render"):
            render_command("echo {{ nope }}", {})


@pytest.fixture
def resolver() -> TargetResolver:
    config = DeployCtlConfig(
        environments={
            "production": EnvironmentConfig(
                services={
                    "api": ServiceTargetConfig(
                        host="10.0.0.5",
                        port=8080,
                        user="deploy",
                        credential_ref="~/.ssh/prod",
                        deploy_dir="/srv/api/",
                    ),
                    "web": ServiceTargetConfig(host="10.0.0.6", base_url="https://www.example.com"),
                }
            )
        }
    )
    return TargetResolver.from_config(config)


class TestTargetResolver:
    def test_resolve(self, resolver):
        target = resolver.resolve("production", "api")

        assert target.key == "production/api"
        assert target.address == "deploy@10.0.0.5"
        assert target.base_url == "http://10.0.0.5:8080"
        assert target.deploy_dir == "/srv/api"
        assert target.backup_dir == "/srv/api/backups"
        assert target.credential_ref == "~/.ssh/prod"

    def test_resolution_is_stable(self, resolver):
        assert resolver.resolve("production", "web") == resolver.resolve("production", "web")

    def test_unknown_service(self, resolver):
        with pytest.raises(UnknownServiceError) as exc_info:
            resolver.resolve("production", "billing")
        assert exc_info.value.service_id == "billing"
        assert exc_info.value.environment == "production"

    def test_unknown_environment_never_falls_back(self, resolver):
        with pytest.raises(UnknownServiceError):
            resolver.resolve("staging", "api")

    def test_resolve_all(self, resolver):
        targets = resolver.resolve_all("production", ["web", "api"])
        assert [t.service_id for t in targets] == ["web", "api"]

        with pytest.raises(UnknownServiceError):
            resolver.resolve_all("production", ["web", "billing"])

    def test_listing(self, resolver):
        assert resolver.environments() == ["production"]
        assert resolver.services("production") == ["api", "web"]
        assert resolver.services("qa") == []

    def test_plan_overrides_merge(self):
        config = DeployCtlConfig(
            environments={
                "staging": EnvironmentConfig(
                    services={"api": ServiceTargetConfig(host="api.staging", port=8080)}
                )
            }
        )
        resolver = TargetResolver.from_config(
            config,
            {
                "staging": {"services": {"api": {"port": 9090}}},
                "preview": {"services": {"api": {"host": "api.preview"}}},
            },
        )

        assert resolver.resolve("staging", "api").base_url == "http://api.staging:9090"
        assert resolver.resolve("preview", "api").host == "api.preview"

    def test_invalid_overrides(self):
        with pytest.raises(ConfigError, match="Invalid environment table"):
            TargetResolver.from_config(
                DeployCtlConfig(), {"staging": {"services": {"api": {"port": 1}}}}
            )
