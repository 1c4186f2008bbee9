"""
Secret injection — run a command with vault secrets in its environment.

    keyway run -- npm start

The child inherits this process's environment with the secrets laid
on top, so a secret overrides an inherited variable of the same name.
The merged environment exists only in memory: it is handed to the
child and never written to disk or logged.

stdin, stdout and stderr are inherited. SIGINT, SIGTERM and SIGHUP
received here are forwarded to the child by a background thread; the
parent keeps waiting so the child can clean up. The exit status is the
child's, or 128 + N when the child died from signal N.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
from typing import Mapping, Optional, Sequence

from .errors import CommandNotFound, ValidationError

logger = logging.getLogger("keyway.injector")

FORWARDED_SIGNALS = tuple(
    sig for sig in (
        getattr(signal, "SIGINT", None),
        getattr(signal, "SIGTERM", None),
        getattr(signal, "SIGHUP", None),
    )
    if sig is not None
)


def build_environment(
    secrets: Mapping[str, str],
    base: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """Inherited environment with every secret applied last."""
    env = dict(os.environ if base is None else base)
    env.update(secrets)
    return env


def exit_status(returncode: int) -> int:
    """Map Popen.returncode to a shell-style exit status."""
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class SignalForwarder:
    """Relay termination signals from this process to a child.

    Handlers only queue the signal number; a dedicated thread does the
    forwarding. Handlers can only be installed from the main thread;
    elsewhere the forwarder is inert.

    The forwarder may be entered before the child exists. Signals that
    arrive in that window are held and delivered once attach() is
    called, so an early Ctrl-C still reaches the child.

    Usage:
        with SignalForwarder() as forwarder:
            proc = subprocess.Popen(argv)
            forwarder.attach(proc)
            proc.wait()
    """

    def __init__(
        self,
        proc: Optional[subprocess.Popen] = None,
        signals: Sequence[int] = FORWARDED_SIGNALS,
    ) -> None:
        self._proc = proc
        self._signals = tuple(signals)
        self._queue: "queue.Queue[Optional[int]]" = queue.Queue()
        self._previous: dict[int, object] = {}
        self._thread: Optional[threading.Thread] = None
        self._attached = threading.Event()
        if proc is not None:
            self._attached.set()

    def attach(self, proc: subprocess.Popen) -> None:
        """Start delivering signals (including held ones) to `proc`."""
        self._proc = proc
        self._attached.set()

    def _on_signal(self, signum, frame) -> None:
        self._queue.put(signum)

    def _forward(self) -> None:
        while True:
            signum = self._queue.get()
            if signum is None:
                return
            self._attached.wait()
            proc = self._proc
            if proc is None or proc.poll() is not None:
                continue
            logger.debug("Forwarding signal %d to pid %d", signum, proc.pid)
            try:
                proc.send_signal(signum)
            except ProcessLookupError:
                pass

    def __enter__(self) -> "SignalForwarder":
        if threading.current_thread() is not threading.main_thread():
            return self
        for sig in self._signals:
            self._previous[sig] = signal.signal(sig, self._on_signal)
        self._thread = threading.Thread(target=self._forward, name="keyway-signals", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._thread is None:
            return
        self._attached.set()
        self._queue.put(None)
        self._thread.join()
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()


def run_command(
    command: str,
    args: Sequence[str],
    secrets: Mapping[str, str],
    base_env: Optional[Mapping[str, str]] = None,
) -> int:
    """Run `command args...` with secrets injected; block until it exits.

    Args:
        command: Program name or path.
        args: Arguments passed verbatim.
        secrets: Snapshot to inject.
        base_env: Environment to inherit (defaults to os.environ).

    Returns:
        int: The child's exit status (128 + N if killed by signal N).

    Raises:
        CommandNotFound: The program does not exist or cannot be executed.
    """
    if not command:
        raise ValidationError("No command given", hint="Usage: keyway run -- <command> [args...]")

    env = build_environment(secrets, base_env)
    logger.debug("Running %s with %d injected secret(s)", command, len(secrets))
    with SignalForwarder() as forwarder:
        try:
            proc = subprocess.Popen([command, *args], env=env)
        except FileNotFoundError:
            raise CommandNotFound(f"Command not found: {command}") from None
        except PermissionError:
            raise CommandNotFound(
                f"Command is not executable: {command}",
                hint="Check the file permissions or pass an interpreter",
            ) from None
        forwarder.attach(proc)
        returncode = proc.wait()

    status = exit_status(returncode)
    logger.debug("%s exited with status %d", command, status)
    return status
