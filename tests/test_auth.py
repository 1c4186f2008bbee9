"""Tests for the device login flow and 401 recovery."""

from __future__ import annotations

from unittest.mock import MagicMock

import keyring
import pytest
from keyring.backends import fail

from keyway.auth import (
    AuthSession,
    DeviceAuthorization,
    DeviceFlow,
    LoginResult,
    PollStatus,
    login_with_token,
)
from keyway.credentials import SOURCE_ENV, SOURCE_KEYRING, KeyringCredentialStore
from keyway.errors import (
    AuthDenied,
    AuthExpired,
    AuthRequired,
    DeviceCodeExpired,
    KeywayError,
    LoginCancelled,
    NetworkError,
    ValidationError,
)


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _client(polls, start=None) -> MagicMock:
    client = MagicMock()
    client.start_device_login.return_value = start or {
        "deviceCode": "dev-code",
        "userCode": "WXYZ-0000",
        "verificationUri": "https://keyway.test/device",
        "expiresIn": 900,
        "interval": 5,
    }
    client.poll_device_login.side_effect = polls
    return client


def _flow(client, clock, store=None, display=None) -> DeviceFlow:
    return DeviceFlow(client, store or MagicMock(), display=display, clock=clock, sleep=clock.sleep)


APPROVED = {"status": "approved", "keywayToken": "kw-token", "githubLogin": "octocat"}
PENDING = {"status": "pending"}


# ---------------------------------------------------------------------------
# REQUEST
# ---------------------------------------------------------------------------


class TestDeviceRequest:
    """Tests for DeviceFlow.request()."""

    def test_normalizes_timing(self, clock):
        """A too-short interval becomes 5s; a huge expiry is capped at 30 min."""
        client = _client([], start={
            "deviceCode": "d", "userCode": "u",
            "verificationUri": "https://x/device",
            "verificationUriComplete": "https://x/device?code=u",
            "expiresIn": 99999, "interval": 1,
        })
        auth = _flow(client, clock).request("acme/api")
        assert auth.poll_interval == 5
        assert auth.expires_at == 1800
        assert auth.verification_url == "https://x/device?code=u"
        client.start_device_login.assert_called_once_with("acme/api")

    def test_defaults(self, clock):
        """Missing expiry and interval fall back to 15 min and 5s."""
        client = _client([], start={"deviceCode": "d", "userCode": "u", "verificationUri": "https://x"})
        auth = _flow(client, clock).request()
        assert auth.expires_at == 900
        assert auth.poll_interval == 5

    def test_incomplete_response(self, clock):
        """No device code means the flow cannot start."""
        client = _client([], start={"userCode": "u"})
        with pytest.raises(KeywayError):
            _flow(client, clock).request()

    def test_repr_hides_device_code(self):
        """The device code stays out of repr()."""
        auth = DeviceAuthorization("secret-device", "USER", "https://x", 10.0, 5.0)
        assert "secret-device" not in repr(auth)
        assert "USER" in repr(auth)


# ---------------------------------------------------------------------------
# POLL
# ---------------------------------------------------------------------------


class TestDevicePoll:
    """Tests for DeviceFlow.poll()."""

    def test_pending_then_approved(self, clock):
        """PENDING keeps the interval; AUTHORIZED returns the token."""
        client = _client([PENDING, PENDING, APPROVED])
        flow = _flow(client, clock)
        result = flow.poll(flow.request())
        assert result.token == "kw-token"
        assert result.username == "octocat"
        assert clock.sleeps == [5, 5, 5]

    def test_slow_down_backs_off(self, clock):
        """Each SLOW_DOWN adds 5 seconds; nothing else changes the interval."""
        client = _client([{"status": "slow_down"}, PENDING, {"status": "slow_down"}, APPROVED])
        flow = _flow(client, clock)
        flow.poll(flow.request())
        assert clock.sleeps == [5, 10, 10, 15]

    def test_denied(self, clock):
        """DENIED terminates without retry."""
        client = _client([PENDING, {"status": "denied"}, APPROVED])
        flow = _flow(client, clock)
        with pytest.raises(AuthDenied):
            flow.poll(flow.request())
        assert client.poll_device_login.call_count == 2

    def test_expired_status(self, clock):
        """An EXPIRED answer terminates the flow."""
        client = _client([{"status": "expired"}])
        flow = _flow(client, clock)
        with pytest.raises(DeviceCodeExpired) as exc_info:
            flow.poll(flow.request())
        assert exc_info.value.exit_code == 2

    def test_no_poll_after_deadline(self, clock):
        """The last sleep is cut to the deadline and no request follows it."""
        poll_times: list[float] = []

        def poll(_code):
            poll_times.append(clock.now)
            return PENDING

        client = _client(poll, start={
            "deviceCode": "d", "userCode": "u", "verificationUri": "https://x",
            "expiresIn": 12, "interval": 5,
        })
        flow = _flow(client, clock)
        with pytest.raises(DeviceCodeExpired):
            flow.poll(flow.request())
        assert poll_times == [5, 10]
        assert clock.sleeps == [5, 5, 2]

    def test_network_error_keeps_polling(self, clock):
        """A transient failure does not end the flow."""
        client = _client([NetworkError("Connection timed out"), APPROVED])
        flow = _flow(client, clock)
        assert flow.poll(flow.request()).token == "kw-token"

    def test_approved_without_token_keeps_polling(self, clock):
        """An approval with no token yet is treated as pending."""
        client = _client([{"status": "approved"}, APPROVED])
        flow = _flow(client, clock)
        assert flow.poll(flow.request()).token == "kw-token"
        assert client.poll_device_login.call_count == 2

    def test_unknown_status_is_pending(self):
        """Unrecognized statuses parse as PENDING."""
        assert PollStatus.parse("weird") is PollStatus.PENDING
        assert PollStatus.parse("APPROVED") is PollStatus.AUTHORIZED

    def test_interrupt_cancels(self, clock):
        """Ctrl-C during POLL becomes LoginCancelled."""
        client = _client([PENDING])

        def interrupted(_seconds):
            raise KeyboardInterrupt

        flow = DeviceFlow(client, MagicMock(), clock=clock, sleep=interrupted)
        with pytest.raises(LoginCancelled):
            flow.poll(flow.request())

    def test_run_displays_and_stores(self, clock, make_store):
        """run(): DISPLAY once, then the token lands in the store."""
        store = make_store()
        shown: list[DeviceAuthorization] = []
        client = _client([APPROVED])
        result = _flow(client, clock, store=store, display=shown.append).run("acme/api")
        assert store.token == "kw-token"
        assert len(shown) == 1
        assert shown[0].user_code == "WXYZ-0000"
        assert "kw-token" not in repr(result)


# ---------------------------------------------------------------------------
# PAT login
# ---------------------------------------------------------------------------


class TestLoginWithToken:
    """Tests for login_with_token()."""

    def test_valid_pat(self, config, fake_vault, make_store):
        """A valid PAT is checked with the vault and stored."""
        store = make_store()
        result = login_with_token(config, store, "  github_pat_abc  ", client_factory=fake_vault.factory)
        assert store.token == "github_pat_abc"
        assert result.method == "pat"
        assert result.username == "octocat"

    @pytest.mark.parametrize("token", ["", "   ", "ghp_classic_token"])
    def test_rejects_non_pat(self, config, fake_vault, make_store, token):
        """Empty or classic tokens are rejected before any request."""
        store = make_store()
        with pytest.raises(ValidationError):
            login_with_token(config, store, token, client_factory=fake_vault.factory)
        assert store.token is None

    def test_rejected_pat_not_stored(self, config, fake_vault, make_store):
        """A PAT the vault rejects is never stored."""
        fake_vault.rejected_tokens.add("github_pat_bad")
        store = make_store()
        with pytest.raises(AuthExpired):
            login_with_token(config, store, "github_pat_bad", client_factory=fake_vault.factory)
        assert store.token is None


# ---------------------------------------------------------------------------
# AuthSession
# ---------------------------------------------------------------------------


@pytest.fixture
def no_keyring():
    """Install the backend keyring falls back to on a headless machine."""
    previous = keyring.get_keyring()
    keyring.set_keyring(fail.Keyring())
    yield
    keyring.set_keyring(previous)


def _session(config, vault, store, **kwargs) -> AuthSession:
    token = kwargs.pop("token") if "token" in kwargs else store.token
    kwargs.setdefault("source", SOURCE_KEYRING if token else None)
    return AuthSession(config, store, token=token, client_factory=vault.factory, **kwargs)


class TestAuthSession:
    """Tests for AUTHENTICATE and 401 recovery."""

    def test_no_token_non_interactive(self, config, fake_vault, make_store):
        """Without a token and a terminal, fail fast with exit 2."""
        session = _session(config, fake_vault, make_store())
        with pytest.raises(AuthRequired) as exc_info:
            session.ensure()
        assert exc_info.value.exit_code == 2
        assert "keyway login" in exc_info.value.hint

    def test_no_token_interactive_logs_in(self, config, fake_vault, make_store):
        """An interactive session runs the login when asked."""
        login = MagicMock(return_value=LoginResult(token="fresh"))
        session = _session(config, fake_vault, make_store(), interactive=True, login=login)
        session.ensure()
        assert session.authenticated
        assert session.client.token == "fresh"

    def test_no_token_declined(self, config, fake_vault, make_store):
        """Declining the login prompt cancels."""
        login = MagicMock()
        session = _session(
            config, fake_vault, make_store(), interactive=True, login=login, confirm=lambda q: False,
        )
        with pytest.raises(LoginCancelled):
            session.ensure()
        login.assert_not_called()

    def test_recovers_once_interactive(self, config, fake_vault, fake_store):
        """401: clear the store, log in again, retry exactly once."""
        fake_vault.rejected_tokens.add("tok-1")
        login = MagicMock(return_value=LoginResult(token="tok-2"))
        session = _session(config, fake_vault, fake_store, interactive=True, login=login)

        account = session.call(lambda c: c.validate_token())

        assert account["username"] == "octocat"
        assert fake_store.deleted == 1
        assert session.recovered
        login.assert_called_once_with()

    def test_second_401_is_terminal(self, config, fake_vault, fake_store):
        """A 401 after re-login is terminal, with no second login."""
        fake_vault.rejected_tokens.update({"tok-1", "tok-2"})
        login = MagicMock(return_value=LoginResult(token="tok-2"))
        session = _session(config, fake_vault, fake_store, interactive=True, login=login)

        with pytest.raises(AuthRequired) as exc_info:
            session.call(lambda c: c.validate_token())
        assert type(exc_info.value) is AuthRequired
        login.assert_called_once_with()

    def test_non_interactive_fails_and_clears(self, config, fake_vault, fake_store):
        """Non-interactive: clear the credential and fail with a hint."""
        fake_vault.rejected_tokens.add("tok-1")
        login = MagicMock()
        session = _session(config, fake_vault, fake_store, interactive=False, login=login)

        with pytest.raises(AuthExpired) as exc_info:
            session.call(lambda c: c.validate_token())
        assert exc_info.value.hint == "Run: keyway logout && keyway login"
        assert fake_store.token is None
        login.assert_not_called()

    def test_env_token_rejected(self, config, fake_vault, make_store):
        """A rejected KEYWAY_TOKEN is never replaced by a prompt."""
        fake_vault.rejected_tokens.add("env-tok")
        login = MagicMock()
        session = _session(
            config, fake_vault, make_store(), token="env-tok", source=SOURCE_ENV,
            interactive=True, login=login,
        )
        with pytest.raises(AuthExpired, match="KEYWAY_TOKEN"):
            session.call(lambda c: c.validate_token())
        login.assert_not_called()

    def test_env_token_rejected_without_keychain(self, config, fake_vault, no_keyring):
        """A rejected KEYWAY_TOKEN on a machine with no keychain is still exit 2."""
        fake_vault.rejected_tokens.add("ci-token")
        session = _session(
            config, fake_vault, KeyringCredentialStore(), token="ci-token", source=SOURCE_ENV,
        )
        with pytest.raises(AuthExpired) as exc_info:
            session.call(lambda c: c.validate_token())
        assert exc_info.value.exit_code == 2

    def test_keychain_delete_failure_still_expires(self, config, fake_vault, no_keyring):
        """If the stale credential cannot be cleared, the 401 is still reported as expiry."""
        fake_vault.rejected_tokens.add("old")
        session = _session(
            config, fake_vault, KeyringCredentialStore(), token="old", source=SOURCE_KEYRING,
        )
        with pytest.raises(AuthExpired) as exc_info:
            session.call(lambda c: c.validate_token())
        assert exc_info.value.exit_code == 2

    def test_declined_relogin(self, config, fake_vault, fake_store):
        """Declining the re-login prompt fails with the login hint."""
        fake_vault.rejected_tokens.add("tok-1")
        session = _session(
            config, fake_vault, fake_store, interactive=True,
            login=MagicMock(), confirm=lambda q: False,
        )
        with pytest.raises(AuthExpired) as exc_info:
            session.call(lambda c: c.validate_token())
        assert exc_info.value.hint == "Run: keyway login"

    def test_recover_only_once(self, config, fake_vault, fake_store):
        """recover() may run once per session."""
        login = MagicMock(return_value=LoginResult(token="tok-2"))
        session = _session(config, fake_vault, fake_store, interactive=True, login=login)
        session.recover()
        with pytest.raises(AuthRequired):
            session.recover()

    def test_repr_hides_token(self, config, fake_vault, fake_store):
        """The session repr carries no token."""
        assert "tok-1" not in repr(_session(config, fake_vault, fake_store))
