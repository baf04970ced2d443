"""Deployment plan schema validation and loading."""

from pathlib import Path
from typing import Any, Literal

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

from deployctl.config import EnvSettings
from deployctl.core.exceptions import PlanError
from deployctl.deploy.models import (
    Action,
    ActionType,
    Artifact,
    ArtifactKind,
    Criticality,
    DeploymentPlan,
    Stage,
)

_jinja = Environment(undefined=StrictUndefined, autoescape=False)


class ArtifactSchema(BaseModel):
    """Schema for a build artifact reference."""

    model_config = {"extra": "forbid"}

    name: str
    path: str
    kind: Literal["binary", "static-bundle"] = "binary"
    version: str = ""
    remote_name: str | None = None

    @field_validator("remote_name")
    @classmethod
    def validate_remote_name(cls, v: str | None) -> str | None:
        if v is not None and ("/" in v or v in ("", ".", "..")):
            raise ValueError("remote_name must be a plain file name")
        return v


class ActionSchema(BaseModel):
    """Schema for a stage action."""

    model_config = {"extra": "forbid"}

    type: Literal["backup", "transfer", "execute", "health_check", "rollback"]
    artifact: str | None = None

    command: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    restart: bool = False
    destructive: bool = False

    backup: bool = True
    allow_missing: bool = False

    url: str | None = None
    path: str | None = None
    expected_status: tuple[int, int] | None = None
    expected_body: str | None = None
    poll_interval: float | None = Field(default=None, ge=0)
    max_attempts: int | None = Field(default=None, ge=1)
    probe_timeout: float | None = Field(default=None, gt=0)

    @field_validator("expected_status")
    @classmethod
    def validate_expected_status(cls, v: tuple[int, int] | None) -> tuple[int, int] | None:
        if v is not None and v[0] > v[1]:
            raise ValueError("expected_status low bound must not exceed high bound")
        return v

    @model_validator(mode="after")
    def validate_fields_for_type(self) -> "ActionSchema":
        """Ensure each action type carries what it needs."""
        if self.type in ("backup", "transfer", "rollback") and not self.artifact:
            raise ValueError(f"'{self.type}' action requires 'artifact'")
        if self.type == "execute":
            if not self.command:
                raise ValueError("'execute' action requires 'command'")
            try:
                _jinja.parse(self.command)
            except TemplateError as e:
                raise ValueError(f"invalid command template: {e}")
        if self.type == "health_check" and self.url and self.path:
            raise ValueError("health_check takes either 'url' or 'path', not both")
        return self

    def to_action(self) -> Action:
        return Action(
            type=ActionType(self.type),
            artifact=self.artifact,
            command=self.command,
            timeout=self.timeout,
            restart=self.restart,
            destructive=self.destructive,
            backup=self.backup,
            allow_missing=self.allow_missing,
            url=self.url,
            path=self.path,
            expected_status=self.expected_status,
            expected_body=self.expected_body,
            poll_interval=self.poll_interval,
            max_attempts=self.max_attempts,
            probe_timeout=self.probe_timeout,
        )


class StageSchema(BaseModel):
    """Schema for a plan stage."""

    model_config = {"extra": "forbid"}

    name: str
    services: list[str] = Field(validation_alias=AliasChoices("services", "targets"), min_length=1)
    criticality: Literal["critical", "best-effort"] = "critical"
    parallel: bool = False
    actions: list[ActionSchema] = Field(min_length=1)

    @field_validator("services")
    @classmethod
    def validate_services(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("services must not repeat")
        return v


class PlanSchema(BaseModel):
    """Schema for a deployment plan file."""

    model_config = {"extra": "forbid"}

    name: str = ""
    description: str = ""
    environment: str | None = None
    vars: dict[str, Any] = Field(default_factory=dict)
    artifacts: list[ArtifactSchema] = Field(default_factory=list)
    stages: list[StageSchema] = Field(min_length=1)
    environments: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_references(self) -> "PlanSchema":
        stage_names = [s.name for s in self.stages]
        duplicates = sorted({n for n in stage_names if stage_names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate stage names: {', '.join(duplicates)}")

        artifact_names = [a.name for a in self.artifacts]
        if len(set(artifact_names)) != len(artifact_names):
            raise ValueError("artifact names must be unique")

        for stage in self.stages:
            for action in stage.actions:
                if action.artifact and action.artifact not in artifact_names:
                    raise ValueError(
                        f"stage '{stage.name}' references unknown artifact '{action.artifact}'"
                    )
        return self


def validate_plan(plan_dict: dict[str, Any]) -> PlanSchema:
    """Validate a plan dictionary against the schema.

    Raises:
        pydantic.ValidationError: If validation fails
    """
    return PlanSchema(**plan_dict)


def build_plan(
    schema: PlanSchema,
    base_dir: Path,
    environment: str | None = None,
    source: str | None = None,
) -> DeploymentPlan:
    """Turn a validated schema into an immutable DeploymentPlan.

    Artifact paths are resolved relative to ``base_dir``. The environment is
    taken from ``environment``, then the plan, then ``DEPLOYCTL_ENV``.
    """
    env = environment or schema.environment or EnvSettings().env
    if not env:
        raise PlanError("No environment given (use --env or set 'environment' in the plan)", path=source)

    artifacts = {}
    for a in schema.artifacts:
        local = Path(a.path).expanduser()
        if not local.is_absolute():
            local = base_dir / local
        artifacts[a.name] = Artifact(
            name=a.name,
            local_path=local,
            kind=ArtifactKind(a.kind),
            version=a.version,
            remote_name=a.remote_name,
        )

    stages = tuple(
        Stage(
            name=s.name,
            services=tuple(s.services),
            actions=tuple(a.to_action() for a in s.actions),
            criticality=Criticality(s.criticality),
            parallel=s.parallel,
        )
        for s in schema.stages
    )

    return DeploymentPlan(
        name=schema.name or (Path(source).stem if source else ""),
        environment=env,
        stages=stages,
        artifacts=artifacts,
        vars=dict(schema.vars),
        environments=dict(schema.environments),
        source=source,
    )


def load_plan(plan_path: str | Path, environment: str | None = None) -> DeploymentPlan:
    """Load and validate a deployment plan from a YAML file.

    Args:
        plan_path: Path to plan YAML file
        environment: Overrides the plan's own environment

    Returns:
        Immutable DeploymentPlan
    """
    path = Path(plan_path)
    try:
        with open(path) as f:
            plan_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise PlanError(f"Invalid YAML: {e}", path=str(path))
    except OSError as e:
        raise PlanError(f"Cannot read plan: {e}", path=str(path))

    if not isinstance(plan_dict, dict):
        raise PlanError("Plan must be a mapping", path=str(path))

    try:
        schema = validate_plan(plan_dict)
    except ValidationError as e:
        raise PlanError(f"Invalid plan: {e}", path=str(path))

    return build_plan(schema, path.parent.resolve(), environment, source=str(path))


def render_command(template: str, context: dict[str, Any]) -> str:
    """Render an execute command against the run context.

    Raises:
        PlanError: If the template references an undefined variable
    """
    try:
        return _jinja.from_string(template).render(**context)
    except TemplateError as e:
        raise PlanError(f"Cannot render command '{template}': {e}")
