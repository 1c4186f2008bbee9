"""Shared test fixtures for keyway."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

import pytest

from keyway.config import KeywayConfig
from keyway.envfile import Snapshot
from keyway.errors import AuthExpired, NotFound


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path):
    """Keep the developer's real token, CI flag and home out of tests."""
    for name in ("KEYWAY_TOKEN", "KEYWAY_API_URL", "KEYWAY_DASHBOARD_URL",
                 "KEYWAY_STRICT_PARSING", "KEYWAY_INSECURE", "CI"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("KEYWAY_HOME", str(tmp_path / ".keyway-env"))


@pytest.fixture
def keyway_home(tmp_path: Path) -> Path:
    """Provide a temporary agent home directory for testing."""
    home = tmp_path / ".keyway"
    home.mkdir()
    return home


@pytest.fixture
def config(keyway_home: Path) -> KeywayConfig:
    return KeywayConfig(home=keyway_home, api_url="https://api.keyway.test", max_workers=4)


class FakeStore:
    """In-memory stand-in for KeyringCredentialStore."""

    def __init__(self, token: Optional[str] = None) -> None:
        self.token = token
        self.deleted = 0

    def store(self, token: str) -> None:
        self.token = token

    def load(self) -> Optional[str]:
        return self.token

    def delete(self) -> bool:
        self.deleted += 1
        had = self.token is not None
        self.token = None
        return had


class FakeVault:
    """Shared in-memory vault service; `client()` hands out per-token views.

    Attributes:
        secrets: (repo, env) -> {key: value}.
        provider: (provider, project_id, env) -> {key: value}.
        projects: provider -> list of project dicts.
        rejected_tokens: Tokens answered with 401.
        fail_keys: key -> exception raised when that key is written.
        calls: (method, token, args) log.
        health: Status code (or exception) the health endpoint answers with.
    """

    def __init__(self) -> None:
        self.secrets: dict[tuple[str, str], dict[str, str]] = {}
        self.provider: dict[tuple[str, str, str], dict[str, str]] = {}
        self.projects: dict[str, list[dict]] = {}
        self.rejected_tokens: set[str] = set()
        self.fail_keys: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self.device_polls: list[dict] = []
        self.device_start = {
            "deviceCode": "dev-code", "userCode": "ABCD-1234",
            "verificationUri": "https://keyway.test/device",
            "expiresIn": 900, "interval": 5,
        }
        self.account = {"username": "octocat", "plan": "free"}
        self.health: object = 200
        self._lock = threading.Lock()

    def factory(self, config, token: Optional[str] = None) -> "FakeClient":
        return FakeClient(self, token)

    def record(self, *entry) -> None:
        with self._lock:
            self.calls.append(entry)

    def calls_named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]


class FakeClient:
    """Implements the VaultClient surface the engine and CLI use."""

    def __init__(self, vault: FakeVault, token: Optional[str]) -> None:
        self.vault = vault
        self.token = token

    def _auth(self) -> None:
        if self.token is None or self.token in self.vault.rejected_tokens:
            raise AuthExpired("HTTP 401")

    def _fail(self, key: str) -> None:
        exc = self.vault.fail_keys.get(key)
        if exc is not None:
            raise exc

    def pull_snapshot(self, repo: str, environment: str) -> Snapshot:
        self.vault.record("pull_snapshot", self.token, repo, environment)
        self._auth()
        if (repo, environment) not in self.vault.secrets:
            raise NotFound("Vault not found")
        return Snapshot(self.vault.secrets[(repo, environment)])

    def set_secret(self, owner, repo, environment, key, value) -> None:
        self.vault.record("set_secret", self.token, key)
        self._auth()
        self._fail(key)
        with self.vault._lock:
            self.vault.secrets.setdefault((f"{owner}/{repo}", environment), {})[key] = value

    def delete_secret(self, owner, repo, environment, key) -> None:
        self.vault.record("delete_secret", self.token, key)
        self._auth()
        self._fail(key)
        with self.vault._lock:
            self.vault.secrets.get((f"{owner}/{repo}", environment), {}).pop(key, None)

    def list_environments(self, owner, repo) -> list[str]:
        self._auth()
        return sorted(env for (r, env) in self.vault.secrets if r == f"{owner}/{repo}")

    def start_device_login(self, repository=None) -> dict:
        self.vault.record("start_device_login", None, repository)
        return dict(self.vault.device_start)

    def poll_device_login(self, device_code: str) -> dict:
        self.vault.record("poll_device_login", None, device_code)
        answer = self.vault.device_polls.pop(0) if self.vault.device_polls else {"status": "pending"}
        if isinstance(answer, Exception):
            raise answer
        return answer

    def validate_token(self) -> dict:
        self._auth()
        return dict(self.vault.account)

    def health(self) -> int:
        self.vault.record("health", None)
        if isinstance(self.vault.health, Exception):
            raise self.vault.health
        return self.vault.health

    def list_provider_projects(self, provider: str) -> list[dict]:
        self._auth()
        return list(self.vault.projects.get(provider, []))

    def get_provider_snapshot(self, provider, project_id, environment) -> Snapshot:
        self._auth()
        return Snapshot(self.vault.provider.get((provider, project_id, environment), {}))

    def set_provider_secret(self, provider, project_id, environment, key, value) -> None:
        self.vault.record("set_provider_secret", self.token, key)
        self._auth()
        self._fail(key)
        with self.vault._lock:
            self.vault.provider.setdefault((provider, project_id, environment), {})[key] = value

    def delete_provider_secret(self, provider, project_id, environment, key) -> None:
        self.vault.record("delete_provider_secret", self.token, key)
        self._auth()
        self._fail(key)
        with self.vault._lock:
            self.vault.provider.get((provider, project_id, environment), {}).pop(key, None)


@pytest.fixture
def fake_vault() -> FakeVault:
    return FakeVault()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore(token="tok-1")


@pytest.fixture
def make_store():
    """Factory for FakeStore instances holding a given token."""
    return FakeStore
