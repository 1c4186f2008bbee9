"""
Authentication — device flow login and 401 recovery.

Device flow (headless OAuth):

    REQUEST -> DISPLAY -> POLL {pending, slow_down, approved, denied, expired}

REQUEST asks the vault for a device code / user code pair. DISPLAY
shows the user code and the verification URL. POLL asks whether the
user approved, at the current interval; only a slow_down answer makes
the interval longer. Nothing is sent after the code's deadline.

AuthSession carries the token explicitly through one command run and
owns the single allowed recovery from a mid-command 401.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

from .api import VaultClient
from .config import KeywayConfig
from .credentials import SOURCE_ENV, CredentialStoreError, KeyringCredentialStore
from .errors import (
    AuthDenied,
    AuthExpired,
    AuthRequired,
    DeviceCodeExpired,
    KeywayError,
    LoginCancelled,
    NetworkError,
    ValidationError,
)

logger = logging.getLogger("keyway.auth")

T = TypeVar("T")

DEFAULT_EXPIRES_IN = 900
MAX_EXPIRES_IN = 1800
DEFAULT_INTERVAL = 5
MIN_INTERVAL = 3
SLOW_DOWN_STEP = 5
PAT_PREFIX = "github_pat_"


class PollStatus(str, Enum):
    """Answers the vault gives to a device poll."""

    PENDING = "pending"
    SLOW_DOWN = "slow_down"
    AUTHORIZED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @classmethod
    def parse(cls, raw: object) -> "PollStatus":
        try:
            return cls(str(raw).lower())
        except ValueError:
            return cls.PENDING


@dataclass
class DeviceAuthorization:
    """One login attempt. Lives only in memory for the login command.

    Attributes:
        device_code: Machine-facing code sent with every poll.
        user_code: Code the user types or confirms in the browser.
        verification_url: Where the user approves the request.
        expires_at: Deadline on the flow's clock.
        poll_interval: Seconds between polls.
    """

    device_code: str
    user_code: str
    verification_url: str
    expires_at: float
    poll_interval: float

    def __repr__(self) -> str:
        return (
            f"DeviceAuthorization(user_code={self.user_code!r}, "
            f"verification_url={self.verification_url!r}, expires_at={self.expires_at!r})"
        )


@dataclass
class LoginResult:
    token: str
    username: Optional[str] = None
    method: str = "device"

    def __repr__(self) -> str:
        return f"LoginResult(username={self.username!r}, method={self.method!r})"


class DeviceFlow:
    """Run the device authorization state machine.

    Args:
        client: Unauthenticated vault client.
        store: Where the resulting token is saved.
        display: Called once with the authorization (DISPLAY step).
        clock: Monotonic time source.
        sleep: Sleep function.
    """

    def __init__(
        self,
        client: VaultClient,
        store: KeyringCredentialStore,
        display: Optional[Callable[[DeviceAuthorization], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._store = store
        self._display = display
        self._clock = clock
        self._sleep = sleep

    def request(self, repository: Optional[str] = None) -> DeviceAuthorization:
        """REQUEST: obtain a device code and its deadline."""
        start = self._client.start_device_login(repository)
        device_code = start.get("deviceCode")
        user_code = start.get("userCode")
        if not device_code or not user_code:
            raise KeywayError("Login could not start: incomplete device code response")

        expires_in = start.get("expiresIn") or DEFAULT_EXPIRES_IN
        expires_in = min(int(expires_in), MAX_EXPIRES_IN)
        interval = start.get("interval") or DEFAULT_INTERVAL
        if interval < MIN_INTERVAL:
            interval = DEFAULT_INTERVAL

        return DeviceAuthorization(
            device_code=device_code,
            user_code=user_code,
            verification_url=start.get("verificationUriComplete") or start.get("verificationUri") or "",
            expires_at=self._clock() + expires_in,
            poll_interval=float(interval),
        )

    def poll(self, auth: DeviceAuthorization) -> LoginResult:
        """POLL until approved, denied or expired.

        Raises:
            AuthDenied: The user denied the request.
            DeviceCodeExpired: The deadline passed first.
            LoginCancelled: Interrupted with Ctrl-C.
        """
        interval = auth.poll_interval
        try:
            while True:
                remaining = auth.expires_at - self._clock()
                if remaining <= 0:
                    break
                self._sleep(min(interval, remaining))
                if self._clock() >= auth.expires_at:
                    break

                try:
                    answer = self._client.poll_device_login(auth.device_code)
                except NetworkError as exc:
                    logger.debug("Poll failed, retrying: %s", exc.category)
                    continue

                status = PollStatus.parse(answer.get("status"))
                logger.debug("Device poll: %s", status.value)
                if status is PollStatus.AUTHORIZED:
                    token = answer.get("keywayToken")
                    if token:
                        return LoginResult(token=token, username=answer.get("githubLogin"))
                elif status is PollStatus.SLOW_DOWN:
                    interval += SLOW_DOWN_STEP
                elif status is PollStatus.DENIED:
                    raise AuthDenied("Login denied")
                elif status is PollStatus.EXPIRED:
                    raise DeviceCodeExpired("Login code expired")
        except KeyboardInterrupt:
            raise LoginCancelled("Login cancelled") from None

        raise DeviceCodeExpired("Login code expired before it was approved")

    def run(self, repository: Optional[str] = None) -> LoginResult:
        """REQUEST, DISPLAY, POLL, then store the token."""
        auth = self.request(repository)
        if self._display is not None:
            self._display(auth)
        result = self.poll(auth)
        self._store.store(result.token)
        logger.info("Logged in%s", f" as {result.username}" if result.username else "")
        return result


def login_with_token(
    config: KeywayConfig,
    store: KeyringCredentialStore,
    token: str,
    client_factory: Callable[..., VaultClient] = VaultClient,
) -> LoginResult:
    """Validate a GitHub fine-grained PAT and store it.

    Raises:
        ValidationError: The token is empty or not a fine-grained PAT.
    """
    token = (token or "").strip()
    if not token:
        raise ValidationError("Token is required")
    if not token.startswith(PAT_PREFIX):
        raise ValidationError(
            f"Token must start with {PAT_PREFIX}",
            hint="Create a fine-grained personal access token on GitHub",
        )
    account = client_factory(config, token=token).validate_token()
    store.store(token)
    return LoginResult(token=token, username=account.get("username"), method="pat")


class AuthSession:
    """The credential for one command run, plus its recovery path.

    The token is passed in explicitly and only replaced by recover().
    Recovery happens at most once per session: a second 401 after a
    fresh login is terminal.

    Args:
        config: Loaded configuration.
        store: Credential store (cleared on recovery).
        token: Token loaded at command start, or None.
        source: Where the token came from ("KEYWAY_TOKEN" or "keyring").
        interactive: Whether a human can answer prompts.
        login: Runs the device flow and returns the new login.
        confirm: Asks a yes/no question.
        client_factory: Builds a VaultClient for a token.
    """

    def __init__(
        self,
        config: KeywayConfig,
        store: KeyringCredentialStore,
        token: Optional[str] = None,
        source: Optional[str] = None,
        interactive: bool = False,
        login: Optional[Callable[[], LoginResult]] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        client_factory: Callable[..., VaultClient] = VaultClient,
    ) -> None:
        self.config = config
        self.store = store
        self.source = source
        self.interactive = interactive
        self._token = token
        self._login = login
        self._confirm = confirm or (lambda _question: True)
        self._client_factory = client_factory
        self._client: Optional[VaultClient] = None
        self._recovered = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"AuthSession(source={self.source!r}, interactive={self.interactive}, recovered={self._recovered})"

    @property
    def authenticated(self) -> bool:
        return bool(self._token)

    @property
    def recovered(self) -> bool:
        return self._recovered

    @property
    def client(self) -> VaultClient:
        if self._client is None:
            self._client = self._client_factory(self.config, token=self._token)
        return self._client

    def ensure(self) -> None:
        """AUTHENTICATE: make sure a token is present, logging in if allowed.

        Raises:
            AuthRequired: No token and no way to get one.
        """
        if self._token:
            return
        if not self.interactive or self._login is None:
            raise AuthRequired("No Keyway session found")
        if not self._confirm("No Keyway session found. Open browser to sign in?"):
            raise LoginCancelled("Login required")
        self._adopt(self._login())

    def _adopt(self, result: LoginResult) -> None:
        self._token = result.token
        self.source = "keyring"
        self._client = None

    def recover(self) -> None:
        """Handle a 401: clear the stored token and log in again, once.

        Raises:
            AuthExpired: Non-interactive session, or the user declined.
            AuthRequired: Recovery already happened in this session.
        """
        with self._lock:
            if self._recovered:
                raise AuthRequired(
                    "Credential rejected again after signing in",
                    hint="Check that your GitHub account can access this repository",
                )
            self._recovered = True

            if self.source == SOURCE_ENV:
                raise AuthExpired(
                    "KEYWAY_TOKEN was rejected",
                    hint="Replace KEYWAY_TOKEN with a valid token",
                )
            try:
                self.store.delete()
            except CredentialStoreError as exc:
                logger.warning("Could not clear stored credential: %s", exc.message)
            else:
                logger.info("Session expired or invalid; cleared stored credential")
            if not self.interactive or self._login is None:
                raise AuthExpired("Session expired or invalid")
            if not self._confirm("Session expired or invalid. Open browser to sign in again?"):
                raise AuthExpired("Session expired or invalid", hint="Run: keyway login")
            self._adopt(self._login())

    def call(self, fn: Callable[[VaultClient], T]) -> T:
        """Run `fn(client)`; on a 401 recover and retry exactly once."""
        self.ensure()
        try:
            return fn(self.client)
        except AuthExpired:
            self.recover()
        try:
            return fn(self.client)
        except AuthExpired:
            raise AuthRequired(
                "Credential rejected again after signing in",
                hint="Check that your GitHub account can access this repository",
            ) from None
