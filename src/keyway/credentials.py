"""
Credential storage — the bearer token lives in the OS keychain.

macOS Keychain, Windows Credential Locker and the freedesktop Secret
Service are all reached through `keyring`. The token never touches a
plain file. In CI, KEYWAY_TOKEN bypasses the store entirely.
"""

from __future__ import annotations

import logging
from typing import Optional

import keyring
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError

from .config import KeywayConfig
from .errors import KeywayError

logger = logging.getLogger("keyway.credentials")

DEFAULT_USERNAME = "default"

SOURCE_ENV = "KEYWAY_TOKEN"
SOURCE_KEYRING = "keyring"


class CredentialStoreError(KeywayError):
    """The OS credential store is unavailable or refused the operation."""

    category = "CREDENTIAL_STORE_ERROR"
    hint = "Unlock your keychain, or set KEYWAY_TOKEN for this session"


class KeyringCredentialStore:
    """Store, load and delete the bearer token in the OS keychain.

    Args:
        service: Keychain service name (config.keyring_service).
        username: Entry name under the service.
    """

    def __init__(self, service: str = "keyway", username: str = DEFAULT_USERNAME) -> None:
        self.service = service
        self.username = username

    def __repr__(self) -> str:
        return f"KeyringCredentialStore(service={self.service!r}, username={self.username!r})"

    def store(self, token: str) -> None:
        try:
            keyring.set_password(self.service, self.username, token)
        except KeyringError as exc:
            raise CredentialStoreError(
                f"Could not save credential: {exc.__class__.__name__}"
            ) from None
        logger.debug("Stored credential in %s", self.service)

    def load(self) -> Optional[str]:
        try:
            token = keyring.get_password(self.service, self.username)
        except KeyringError as exc:
            logger.warning("Credential store unavailable: %s", exc.__class__.__name__)
            return None
        return token or None

    def delete(self) -> bool:
        """Remove the stored credential.

        Returns:
            bool: True if a credential was removed, False if none existed.
        """
        try:
            keyring.delete_password(self.service, self.username)
        except PasswordDeleteError:
            return False
        except KeyringError as exc:
            raise CredentialStoreError(
                f"Could not delete credential: {exc.__class__.__name__}"
            ) from None
        logger.debug("Deleted credential from %s", self.service)
        return True


def store_for(config: KeywayConfig) -> KeyringCredentialStore:
    return KeyringCredentialStore(service=config.keyring_service)


def keychain_backend() -> Optional[str]:
    """Name of the active keyring backend, or None on a machine without one."""
    backend = keyring.get_keyring()
    if isinstance(backend, fail.Keyring):
        return None
    return type(backend).__name__


def resolve_token(
    config: KeywayConfig,
    store: KeyringCredentialStore,
) -> tuple[Optional[str], Optional[str]]:
    """Find the token to use and say where it came from.

    Returns:
        (token, source): source is "KEYWAY_TOKEN", "keyring" or None.
    """
    if config.token:
        return config.token, SOURCE_ENV
    token = store.load()
    if token:
        return token, SOURCE_KEYRING
    return None, None
