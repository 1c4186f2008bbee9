"""
Error taxonomy for the local agent.

Every terminal failure is one of these classes. Each carries a stable,
greppable category, the process exit status the CLI should use, and a
one-line remedy hint. Messages never include secret values.

Exit codes:
    0 success, 1 general error, 2 authentication required,
    3 vault/environment not found, 4 permission denied, 5 network error.
"""

from __future__ import annotations

from typing import Optional

import requests

EXIT_OK = 0
EXIT_GENERAL = 1
EXIT_AUTH = 2
EXIT_NOT_FOUND = 3
EXIT_FORBIDDEN = 4
EXIT_NETWORK = 5


class KeywayError(Exception):
    """Base class for every failure the agent reports to the user."""

    category = "ERROR"
    exit_code = EXIT_GENERAL
    hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint

    def __str__(self) -> str:
        return self.message


class AuthRequired(KeywayError):
    """No usable credential is available."""

    category = "AUTH_REQUIRED"
    exit_code = EXIT_AUTH
    hint = "Run: keyway login"


class AuthExpired(AuthRequired):
    """The vault rejected the credential mid-operation (HTTP 401)."""

    category = "AUTH_EXPIRED"
    hint = "Run: keyway logout && keyway login"


class DeviceCodeExpired(AuthExpired):
    """The device code expired before the user authorized it."""

    category = "AUTH_CODE_EXPIRED"
    hint = "Run keyway login again and finish the browser step within the time limit"


class AuthDenied(AuthRequired):
    """The user (or GitHub) denied the device authorization."""

    category = "AUTH_DENIED"
    hint = "Run keyway login again and approve the request in your browser"


class LoginCancelled(AuthRequired):
    """The user interrupted (or declined) the login flow."""

    category = "AUTH_CANCELLED"


class NotFound(KeywayError):
    """Vault, environment or key does not exist."""

    category = "NOT_FOUND"
    exit_code = EXIT_NOT_FOUND
    hint = "Check the repository and environment name, or create it with: keyway push"


class PermissionDenied(KeywayError):
    """The credential is valid but lacks GitHub permission on the repository."""

    category = "PERMISSION_DENIED"
    exit_code = EXIT_FORBIDDEN
    hint = "Ask a repository admin for access, then retry"


class NetworkError(KeywayError):
    """Timeout, DNS failure, refused or reset connection."""

    category = "NETWORK_ERROR"
    exit_code = EXIT_NETWORK
    hint = "Check your connection (or KEYWAY_API_URL) and re-run the command"


class ValidationError(KeywayError):
    """Malformed env file line, invalid environment name, bad option combination."""

    category = "VALIDATION_ERROR"
    hint = "Fix the input and re-run the command"


class ProviderError(KeywayError):
    """A third-party provider adapter failed (distinct from vault failures)."""

    category = "PROVIDER_ERROR"
    hint = "Check the provider connection with: keyway sync <provider> --help"


class CommandNotFound(KeywayError):
    """The command handed to `keyway run` does not exist."""

    category = "COMMAND_NOT_FOUND"
    hint = "Check the command name and your PATH"


class PartialSyncFailure(KeywayError):
    """Some keys were applied, some failed.

    Attributes:
        succeeded: Keys that were applied.
        failed: Mapping of failed key to its error category.
    """

    category = "PARTIAL_SYNC_FAILURE"
    hint = "Re-run the command to retry the failed keys"

    def __init__(
        self,
        succeeded: list[str],
        failed: dict[str, str],
        hint: Optional[str] = None,
    ) -> None:
        self.succeeded = sorted(succeeded)
        self.failed = dict(sorted(failed.items()))
        applied = f"{len(self.succeeded)} key(s) applied"
        if self.succeeded:
            applied += f" ({', '.join(self.succeeded)})"
        message = (
            f"{applied}, {len(self.failed)} failed: "
            + ", ".join(f"{k} ({c})" for k, c in self.failed.items())
        )
        super().__init__(message, hint)


def error_from_status(status: int, detail: str = "") -> KeywayError:
    """Map an HTTP error status to the taxonomy.

    Args:
        status: HTTP status code (>= 400).
        detail: Server-provided message, if any.

    Returns:
        KeywayError: The matching exception instance (not raised).
    """
    message = detail or f"HTTP {status}"
    if status == 401:
        return AuthExpired(message)
    if status == 403:
        return PermissionDenied(message)
    if status == 404:
        return NotFound(message)
    if status in (400, 422):
        return ValidationError(message)
    if status >= 500:
        return KeywayError(f"Server error: {message}", hint="Try again in a moment")
    return KeywayError(message)


def error_from_transport(exc: requests.RequestException) -> NetworkError:
    """Turn a `requests` transport failure into a readable NetworkError."""
    text = str(exc)
    if isinstance(exc, requests.Timeout):
        return NetworkError("Connection timed out - check your network connection")
    if isinstance(exc, requests.exceptions.SSLError) or "certificate" in text:
        return NetworkError("SSL certificate error - check your system time")
    if "Name or service not known" in text or "nodename nor servname" in text or "getaddrinfo" in text:
        return NetworkError("DNS lookup failed - check your internet connection")
    if "Connection refused" in text:
        return NetworkError("Connection refused - is the API server running?")
    return NetworkError(f"Network error: {exc.__class__.__name__}")
