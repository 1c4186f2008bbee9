"""
Vault service client.

Thin wrapper around a `requests.Session` that speaks the vault's JSON
API. Every failure leaves this module as a KeywayError subclass:
HTTP statuses through error_from_status(), transport failures through
error_from_transport(). Bearer tokens and secret values are never
logged; debug records carry method, path and status only.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote

import requests

from . import __version__
from .config import KeywayConfig
from .envfile import Snapshot, parse
from .errors import KeywayError, error_from_status, error_from_transport

logger = logging.getLogger("keyway.api")

USER_AGENT = f"keyway-cli/{__version__}"


def _seg(value: str) -> str:
    return quote(value, safe="")


def _error_detail(resp: requests.Response) -> str:
    """Pull an RFC 7807 message (detail, then title) out of an error body."""
    try:
        body = resp.json()
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    for key in ("detail", "title", "message", "error"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


class VaultClient:
    """Authenticated client for the vault service.

    Args:
        config: Loaded configuration (base URL, timeout, TLS flag).
        token: Bearer token. Endpoints used before login accept None.
        session: Optional pre-built session (tests inject a mock).
    """

    def __init__(
        self,
        config: KeywayConfig,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config
        self._token = token
        self._base = config.api_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update({
            "User-Agent": USER_AGENT,
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def __repr__(self) -> str:
        return f"VaultClient(api_url={self._base!r}, authenticated={self._token is not None})"

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
        auth: bool = True,
    ) -> Any:
        """Make an API call and return the unwrapped payload.

        Args:
            method: HTTP method.
            path: Path below the API base URL.
            params: Query parameters.
            body: JSON body.
            auth: Send the bearer token.

        Returns:
            The `data` member of the response when present, else the
            whole decoded body (None for empty responses).

        Raises:
            KeywayError: Mapped from the HTTP status or transport failure.
        """
        headers = {}
        if auth and self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            resp = self._session.request(
                method,
                f"{self._base}{path}",
                params=params,
                json=body,
                headers=headers,
                timeout=self._config.timeout_seconds,
                verify=not self._config.insecure,
            )
        except requests.RequestException as exc:
            logger.debug("%s %s failed: %s", method, path, exc.__class__.__name__)
            raise error_from_transport(exc) from None

        logger.debug("%s %s -> %d", method, path, resp.status_code)
        if resp.status_code >= 400:
            raise error_from_status(resp.status_code, _error_detail(resp))

        if not resp.content:
            return None
        try:
            payload = resp.json()
        except ValueError:
            raise KeywayError(
                f"Invalid response from {path} (HTTP {resp.status_code})",
                hint="Check KEYWAY_API_URL points at the vault service",
            ) from None
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload

    # -- vault secrets -------------------------------------------------------

    def pull_snapshot(self, repo: str, environment: str) -> Snapshot:
        """Fetch an environment's full snapshot.

        Args:
            repo: `owner/repo`.
            environment: Environment name.

        Returns:
            Snapshot: Remote secrets, parsed leniently.
        """
        data = self._request(
            "GET", "/v1/secrets/pull",
            params={"repo": repo, "environment": environment},
        ) or {}
        return parse(data.get("content") or "")

    def set_secret(self, owner: str, repo: str, environment: str, key: str, value: str) -> None:
        """Create or update one secret."""
        self._request(
            "PUT",
            f"/v1/vaults/{_seg(owner)}/{_seg(repo)}/environments/{_seg(environment)}"
            f"/secrets/{_seg(key)}",
            body={"value": value},
        )

    def delete_secret(self, owner: str, repo: str, environment: str, key: str) -> None:
        """Delete one secret."""
        self._request(
            "DELETE",
            f"/v1/vaults/{_seg(owner)}/{_seg(repo)}/environments/{_seg(environment)}"
            f"/secrets/{_seg(key)}",
        )

    def list_environments(self, owner: str, repo: str) -> list[str]:
        """Environment names defined for a vault."""
        data = self._request("GET", f"/v1/vaults/{_seg(owner)}/{_seg(repo)}") or {}
        return list(data.get("environments") or [])

    # -- service -------------------------------------------------------------

    def health(self) -> int:
        """HTTP status of the unauthenticated health endpoint.

        Raises:
            NetworkError: The service could not be reached.
        """
        try:
            resp = self._session.head(
                f"{self._base}/v1/health",
                timeout=self._config.timeout_seconds,
                verify=not self._config.insecure,
            )
        except requests.RequestException as exc:
            logger.debug("HEAD /v1/health failed: %s", exc.__class__.__name__)
            raise error_from_transport(exc) from None
        logger.debug("HEAD /v1/health -> %d", resp.status_code)
        return resp.status_code

    # -- login ---------------------------------------------------------------

    def start_device_login(self, repository: Optional[str] = None) -> dict[str, Any]:
        """Begin the device authorization handshake."""
        body = {"repository": repository} if repository else {}
        return self._request("POST", "/v1/auth/device/start", body=body, auth=False) or {}

    def poll_device_login(self, device_code: str) -> dict[str, Any]:
        """Ask whether the user has approved the device code yet."""
        return self._request(
            "POST", "/v1/auth/device/poll",
            body={"deviceCode": device_code}, auth=False,
        ) or {}

    def validate_token(self) -> dict[str, Any]:
        """Check the current token; returns the account (username, plan)."""
        return self._request("POST", "/v1/auth/token/validate", body={}) or {}

    # -- provider integrations ------------------------------------------------

    def list_provider_projects(self, provider: str) -> list[dict[str, Any]]:
        """Projects visible through the user's connection to `provider`."""
        data = self._request(
            "GET", f"/v1/integrations/providers/{_seg(provider)}/all-projects",
        ) or {}
        return list(data.get("projects") or [])

    def _provider_path(self, provider: str, project_id: str, environment: str) -> str:
        return (
            f"/v1/integrations/providers/{_seg(provider)}/projects/{_seg(project_id)}"
            f"/environments/{_seg(environment)}/secrets"
        )

    def get_provider_snapshot(self, provider: str, project_id: str, environment: str) -> Snapshot:
        """Current variables of a provider project environment."""
        data = self._request("GET", self._provider_path(provider, project_id, environment)) or {}
        secrets = data.get("secrets") or {}
        return Snapshot({str(k): "" if v is None else str(v) for k, v in secrets.items()})

    def set_provider_secret(
        self, provider: str, project_id: str, environment: str, key: str, value: str,
    ) -> None:
        self._request(
            "PUT",
            f"{self._provider_path(provider, project_id, environment)}/{_seg(key)}",
            body={"value": value},
        )

    def delete_provider_secret(
        self, provider: str, project_id: str, environment: str, key: str,
    ) -> None:
        self._request(
            "DELETE",
            f"{self._provider_path(provider, project_id, environment)}/{_seg(key)}",
        )
