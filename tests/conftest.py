"""Pytest fixtures for deployctl tests."""

import os
from pathlib import Path
from typing import Any, Callable, Generator

import httpx
import pytest
import yaml
from click.testing import CliRunner

from deployctl.config import (
    DeployCtlConfig,
    EnvironmentConfig,
    HealthDefaults,
    ServiceTargetConfig,
)
from deployctl.core.cancellation import CancellationToken
from deployctl.core.context import DeployCtlContext
from deployctl.core.output import OutputFormat
from deployctl.deploy.models import Artifact, ArtifactKind, Target


class HealthScript:
    """httpx MockTransport handler replaying scripted status codes per host.

    Each host answers with its list of statuses in order and then repeats the
    last one. Every request is recorded.
    """

    def __init__(self, statuses: dict[str, list[int]], body: str = '{"status": "UP"}'):
        self.statuses = {host: list(codes) for host, codes in statuses.items()}
        self.body = body
        self.requests: list[httpx.Request] = []
        self.on_request: Callable[[httpx.Request], None] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        codes = self.statuses.get(request.url.host, [200])
        code = codes.pop(0) if len(codes) > 1 else codes[0]
        return httpx.Response(code, text=self.body)

    def calls(self, host: str) -> int:
        return sum(1 for r in self.requests if r.url.host == host)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def clean_env(tmp_path_factory: pytest.TempPathFactory) -> Generator[None, None, None]:
    """Strip DEPLOYCTL_* variables and point HOME at an empty directory."""
    env_vars = [k for k in os.environ if k.startswith("DEPLOYCTL_")] + ["HOME"]
    original = {k: os.environ.get(k) for k in env_vars}

    for k in env_vars:
        os.environ.pop(k, None)
    os.environ["HOME"] = str(tmp_path_factory.mktemp("home"))

    yield

    for k, v in original.items():
        if v is not None:
            os.environ[k] = v
        else:
            os.environ.pop(k, None)


@pytest.fixture
def hosts(tmp_path: Path) -> dict[str, Path]:
    """Directories standing in for the filesystems of two remote hosts."""
    roots = {}
    for service in ("api", "web"):
        root = tmp_path / "hosts" / service
        (root / "app").mkdir(parents=True)
        roots[service] = root
    return roots


@pytest.fixture
def environments(hosts: dict[str, Path]) -> dict[str, EnvironmentConfig]:
    """A staging environment whose services live on the local transport."""
    return {
        "staging": EnvironmentConfig(
            services={
                service: ServiceTargetConfig(
                    host=f"{service}.staging.internal",
                    port=8080,
                    deploy_dir=str(root / "app"),
                    backup_dir=str(root / "backups"),
                    transport="local",
                )
                for service, root in hosts.items()
            }
        )
    }


@pytest.fixture
def config(tmp_path: Path, environments: dict[str, EnvironmentConfig]) -> DeployCtlConfig:
    """Configuration with local targets and fast health polling."""
    return DeployCtlConfig(
        state_dir=str(tmp_path / "state"),
        health=HealthDefaults(poll_interval=0, max_attempts=3),
        environments=environments,
    )


@pytest.fixture
def config_file(tmp_path: Path, config: DeployCtlConfig) -> str:
    """The ``config`` fixture written out as a YAML file."""
    path = tmp_path / "deployctl.yaml"
    path.write_text(yaml.safe_dump(config.model_dump(mode="json", by_alias=True)))
    return str(path)


@pytest.fixture
def context(config: DeployCtlConfig) -> DeployCtlContext:
    return DeployCtlContext(
        config=config,
        output_format=OutputFormat.TABLE,
        color=False,
    )


@pytest.fixture
def build_dir(tmp_path: Path) -> Path:
    """Build outputs: a jar file and a static site bundle."""
    build = tmp_path / "build"
    build.mkdir()
    (build / "api.jar").write_text("api v2")
    site = build / "site"
    (site / "assets").mkdir(parents=True)
    (site / "index.html").write_text("<h1>v2</h1>")
    (site / "assets" / "app.js").write_text("console.log('v2')")
    return build


@pytest.fixture
def jar(build_dir: Path) -> Artifact:
    return Artifact(name="api-jar", local_path=build_dir / "api.jar", version="2.0.0")


@pytest.fixture
def site(build_dir: Path) -> Artifact:
    return Artifact(
        name="site",
        local_path=build_dir / "site",
        kind=ArtifactKind.STATIC_BUNDLE,
        version="2.0.0",
    )


@pytest.fixture
def api_target(hosts: dict[str, Path]) -> Target:
    root = hosts["api"]
    return Target(
        service_id="api",
        environment="staging",
        host="api.staging.internal",
        port=8080,
        base_url="http://api.staging.internal:8080",
        deploy_dir=str(root / "app"),
        backup_dir=str(root / "backups"),
        transport="local",
    )


@pytest.fixture
def write_plan(tmp_path: Path, build_dir: Path) -> Callable[..., Path]:
    """Write a plan YAML next to the build directory and return its path."""

    def _write(stages: list[dict[str, Any]], **extra: Any) -> Path:
        plan = {
            "name": "release",
            "environment": "staging",
            "artifacts": [
                {"name": "api-jar", "path": "build/api.jar", "version": "2.0.0"},
                {"name": "site", "path": "build/site", "kind": "static-bundle"},
            ],
            "stages": stages,
            **extra,
        }
        path = tmp_path / "plan.yaml"
        path.write_text(yaml.safe_dump(plan, sort_keys=False))
        return path

    return _write


@pytest.fixture
def cancel_token() -> CancellationToken:
    return CancellationToken()
