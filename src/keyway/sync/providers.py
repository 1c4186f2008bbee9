"""
Provider adapters -- where vault secrets are deployed.

Each deployment platform gets a thin adapter; the engine only sees
the ProviderAdapter interface. The built-in adapters reach the
platforms through the vault service's integration endpoints, so the
provider's own credentials stay server-side.

Vercel: staging maps to its "preview" environment.
Railway: environment names map to themselves.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from ..api import VaultClient
from ..envfile import Snapshot
from ..errors import AuthRequired, KeywayError, NetworkError, ProviderError, ValidationError

logger = logging.getLogger("keyway.sync.providers")

T = TypeVar("T")


class ProviderProject(BaseModel):
    """A project on the provider side, as listed by the vault service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str
    linked_repo: Optional[str] = Field(default=None, alias="linkedRepo")
    service_name: Optional[str] = Field(default=None, alias="serviceName")
    environments: list[str] = Field(default_factory=list)
    connection_id: Optional[str] = Field(default=None, alias="connectionId")

    @property
    def display_name(self) -> str:
        return self.service_name or self.name


class ProviderAdapter(ABC):
    """Abstract deployment-platform adapter."""

    #: vault environment -> provider environment
    environment_map: dict[str, str] = {}

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry name (e.g. 'vercel')."""

    @property
    def display_name(self) -> str:
        return self.name.capitalize()

    def map_environment(self, vault_env: str) -> str:
        """Provider environment for a vault environment; unknown -> production."""
        return self.environment_map.get(vault_env.lower(), "production")

    def _guard(self, fn: Callable[[], T]) -> T:
        """Report provider-side failures as ProviderError.

        Auth and network failures pass through unchanged; they are about
        the vault connection, not the provider.
        """
        try:
            return fn()
        except (AuthRequired, NetworkError):
            raise
        except KeywayError as exc:
            raise ProviderError(f"{self.display_name}: {exc.message}") from None

    def list_projects(self, client: VaultClient) -> list[ProviderProject]:
        raw = self._guard(lambda: client.list_provider_projects(self.name))
        return [ProviderProject.model_validate(p) for p in raw]

    def get_snapshot(self, client: VaultClient, project_id: str, environment: str) -> Snapshot:
        return self._guard(
            lambda: client.get_provider_snapshot(self.name, project_id, environment)
        )

    def set_secret(
        self, client: VaultClient, project_id: str, environment: str, key: str, value: str,
    ) -> None:
        self._guard(
            lambda: client.set_provider_secret(self.name, project_id, environment, key, value)
        )

    def delete_secret(self, client: VaultClient, project_id: str, environment: str, key: str) -> None:
        self._guard(
            lambda: client.delete_provider_secret(self.name, project_id, environment, key)
        )

    def select_project(
        self,
        projects: list[ProviderProject],
        repo_full_name: str,
        project: Optional[str] = None,
    ) -> ProviderProject:
        """Pick the project to sync with.

        Order: explicit id or name, the project linked to the repository,
        an exact name match on the repository name, the only project.

        Raises:
            ProviderError: No project, or no unambiguous choice.
        """
        if not projects:
            raise ProviderError(
                f"No {self.display_name} projects found",
                hint=f"Connect {self.display_name} in the Keyway dashboard first",
            )

        if project:
            wanted = project.lower()
            for p in projects:
                if p.id == project or p.name.lower() == wanted or (
                    p.service_name and p.service_name.lower() == wanted
                ):
                    return p
            names = ", ".join(sorted(p.display_name for p in projects))
            raise ProviderError(
                f"Project not found: {project}",
                hint=f"Available projects: {names}",
            )

        repo_lower = repo_full_name.lower()
        for p in projects:
            if p.linked_repo and p.linked_repo.lower() == repo_lower:
                logger.info("Selected %s project %s (linked to %s)", self.name, p.display_name, repo_full_name)
                return p

        repo_name = repo_lower.split("/")[-1]
        for p in projects:
            if p.name.lower() == repo_name:
                logger.info("Selected %s project %s (name match)", self.name, p.display_name)
                return p

        if len(projects) == 1:
            return projects[0]

        raise ProviderError(
            f"Several {self.display_name} projects found and none matches {repo_full_name}",
            hint="Choose one with --project",
        )


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------

_PROVIDERS: dict[str, type[ProviderAdapter]] = {}


def register_provider(name: str):
    """Decorator to register a provider adapter class.

    Args:
        name: Provider name used on the command line (e.g. 'vercel').
    """
    def wrapper(cls):
        _PROVIDERS[name] = cls
        return cls
    return wrapper


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def create_provider(name: str) -> ProviderAdapter:
    """Instantiate the adapter registered under `name`.

    Raises:
        ValidationError: Unknown provider.
    """
    cls = _PROVIDERS.get((name or "").lower())
    if cls is None:
        raise ValidationError(
            f"Unknown provider: {name}",
            hint=f"Supported providers: {', '.join(available_providers())}",
        )
    return cls()


@register_provider("vercel")
class VercelAdapter(ProviderAdapter):
    """Vercel projects; staging secrets land in Preview."""

    environment_map = {
        "production": "production",
        "staging": "preview",
        "dev": "development",
        "development": "development",
    }

    @property
    def name(self) -> str:
        return "vercel"


@register_provider("railway")
class RailwayAdapter(ProviderAdapter):
    """Railway services."""

    environment_map = {
        "production": "production",
        "staging": "staging",
        "dev": "development",
        "development": "development",
    }

    @property
    def name(self) -> str:
        return "railway"
