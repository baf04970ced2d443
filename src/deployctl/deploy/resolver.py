"""Map (environment, service) pairs onto concrete deployment targets."""

from typing import Any, Iterable

from pydantic import ValidationError

from deployctl.config import DeployCtlConfig, EnvironmentConfig, merge_dicts
from deployctl.core.exceptions import ConfigError, UnknownServiceError
from deployctl.deploy.models import Target


class TargetResolver:
    """Resolve symbolic environment/service names to Targets.

    The table is fixed at construction; resolving is a pure lookup and never
    falls back to a default host.
    """

    def __init__(self, environments: dict[str, EnvironmentConfig]):
        self._environments = environments

    @classmethod
    def from_config(
        cls,
        config: DeployCtlConfig,
        overrides: dict[str, Any] | None = None,
    ) -> "TargetResolver":
        """Build a resolver from configuration plus plan-level overrides."""
        if not overrides:
            return cls(dict(config.environments))

        base = {
            name: env.model_dump(exclude_unset=True)
            for name, env in config.environments.items()
        }
        merged = merge_dicts(base, overrides)
        try:
            environments = {
                name: EnvironmentConfig(**(env or {})) for name, env in merged.items()
            }
        except (ValidationError, TypeError) as e:
            raise ConfigError(f"Invalid environment table: {e}")
        return cls(environments)

    def environments(self) -> list[str]:
        return sorted(self._environments)

    def services(self, environment: str) -> list[str]:
        env = self._environments.get(environment)
        return sorted(env.services) if env else []

    def resolve(self, environment: str, service_id: str) -> Target:
        """Resolve one service.

        Raises:
            UnknownServiceError: If the pair is not in the table
        """
        env = self._environments.get(environment)
        if env is None or service_id not in env.services:
            raise UnknownServiceError(environment, service_id)

        svc = env.services[service_id]
        return Target(
            service_id=service_id,
            environment=environment,
            host=svc.host,
            port=svc.port,
            base_url=svc.get_base_url(),
            credential_ref=svc.credential_ref,
            user=svc.user,
            ssh_port=svc.ssh_port,
            deploy_dir=svc.deploy_dir.rstrip("/") or "/",
            backup_dir=svc.get_backup_dir().rstrip("/") or "/",
            transport=svc.transport,
        )

    def resolve_all(self, environment: str, service_ids: Iterable[str]) -> list[Target]:
        """Resolve several services; the first unknown one raises."""
        return [self.resolve(environment, s) for s in service_ids]
