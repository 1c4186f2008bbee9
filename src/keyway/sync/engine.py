"""
Sync Engine -- moves secrets between a local file, the vault and providers.

Every operation walks the same stages:

    AUTHENTICATE -> FETCH_REMOTE -> COMPUTE_DIFF -> CONFIRM -> APPLY -> REPORT

    keyway push   ->  fetch vault -> diff(vault, local) -> set added/changed (+ prune)
    keyway pull   ->  fetch vault -> write the whole snapshot to the file
    keyway diff   ->  fetch both sides -> render, nothing applied
    keyway sync   ->  fetch vault + provider -> diff by direction -> apply

APPLY issues per-key writes on a bounded thread pool and collects
every outcome before reporting, so the result does not depend on
completion order.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

from ..api import VaultClient
from ..audit import audit_event
from ..auth import AuthSession
from ..config import KeywayConfig
from ..diff import DiffView, diff
from ..envfile import Snapshot, parse, read_env_file, write_env_file
from ..errors import (
    AuthExpired,
    AuthRequired,
    KeywayError,
    NotFound,
    PartialSyncFailure,
    ValidationError,
)
from .models import (
    ApplyReport,
    KeyAction,
    KeyOutcome,
    KeyStatus,
    ProviderPlan,
    PushPlan,
    Stage,
    SyncDirection,
    SyncResult,
    SyncState,
    VaultRef,
)
from .providers import create_provider

logger = logging.getLogger("keyway.sync.engine")

Plan = Union[PushPlan, ProviderPlan]
KeyOp = tuple[str, KeyAction, Callable[[VaultClient], None]]

# One side of a compare: an environment name or a local file.
Side = Union[str, Path]


def load_state(config: KeywayConfig) -> SyncState:
    """Load sync state from disk."""
    state_file = config.state_file
    if state_file.exists():
        try:
            data = json.loads(state_file.read_text(encoding="utf-8"))
            return SyncState(**data)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Failed to load sync state: %s", exc)
    return SyncState()


class SyncEngine:
    """Orchestrates push, pull, compare and provider sync.

    Args:
        config: Loaded configuration.
        session: Credential and 401 recovery for this invocation.
        confirm: Called with the plan at CONFIRM; returning False stops
            before APPLY. None means proceed without asking.
    """

    def __init__(
        self,
        config: KeywayConfig,
        session: AuthSession,
        confirm: Optional[Callable[[Plan], bool]] = None,
    ) -> None:
        self.config = config
        self.session = session
        self._confirm = confirm
        self.stage = Stage.AUTHENTICATE
        self.state = load_state(config)

    # -- state ---------------------------------------------------------------

    def _save_state(self) -> None:
        """Persist sync state to disk."""
        try:
            self.config.home.mkdir(parents=True, exist_ok=True)
            self.config.state_file.write_text(
                self.state.model_dump_json(indent=2), encoding="utf-8"
            )
        except OSError as exc:
            logger.warning("Failed to save sync state: %s", exc)

    def _enter(self, stage: Stage) -> None:
        self.stage = stage
        logger.debug("Stage: %s", stage.value)

    def _audit(self, event_type: str, detail: str, target: Optional[str] = None, **metadata) -> None:
        """Write to the local audit log."""
        audit_event(self.config.home, event_type, detail, target=target, metadata=metadata or None)

    def _fail(self, exc: KeywayError) -> None:
        self.state.last_error = exc.category
        self._save_state()

    def _ask(self, plan: Plan) -> bool:
        self._enter(Stage.CONFIRM)
        if self._confirm is None:
            return True
        return bool(self._confirm(plan))

    # -- apply ---------------------------------------------------------------

    def _run_ops(self, ops: list[KeyOp], abort_on_failure: bool) -> dict[str, KeyOutcome]:
        abort = threading.Event()

        def run(op: KeyOp) -> KeyOutcome:
            key, action, fn = op
            if abort.is_set():
                return KeyOutcome(key=key, action=action, status=KeyStatus.SKIPPED)
            try:
                fn(self.session.client)
            except AuthExpired as exc:
                return KeyOutcome(key=key, action=action, status=KeyStatus.FAILED, error_category=exc.category)
            except KeywayError as exc:
                logger.debug("%s %s failed: %s", action.value, key, exc.category)
                if abort_on_failure:
                    abort.set()
                return KeyOutcome(key=key, action=action, status=KeyStatus.FAILED, error_category=exc.category)
            return KeyOutcome(key=key, action=action, status=KeyStatus.APPLIED)

        workers = max(1, min(self.config.max_workers, len(ops)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="keyway-apply") as pool:
            results = list(pool.map(run, ops))
        return {o.key: o for o in results}

    def _apply(self, ops: list[KeyOp], abort_on_failure: bool = False) -> ApplyReport:
        """APPLY: run key writes concurrently and collect every outcome.

        Keys rejected with a 401 are retried once after the session
        recovers; a second 401 is terminal.

        Raises:
            AuthExpired: The session could not recover (non-interactive).
            AuthRequired: Keys were rejected again after recovery.
        """
        self._enter(Stage.APPLY)
        if not ops:
            return ApplyReport()

        outcomes = self._run_ops(ops, abort_on_failure)
        expired = [op for op in ops if outcomes[op[0]].error_category == AuthExpired.category]
        if expired:
            logger.info("%d key(s) rejected with 401, recovering session", len(expired))
            self.session.recover()
            retried = self._run_ops(expired, abort_on_failure)
            if any(o.error_category == AuthExpired.category for o in retried.values()):
                raise AuthRequired(
                    "Credential rejected again after signing in",
                    hint="Check that your GitHub account can access this repository",
                )
            outcomes.update(retried)

        return ApplyReport(outcomes=[outcomes[k] for k in sorted(outcomes)])

    def _raise_partial(self, report: ApplyReport) -> None:
        if report.ok:
            return
        failed = dict(report.failed)
        failed.update({k: KeyStatus.SKIPPED.value.upper() for k in report.skipped})
        exc = PartialSyncFailure(report.applied, failed)
        self._fail(exc)
        raise exc

    def _fetch_vault(self, target: VaultRef, missing_ok: bool) -> tuple[Snapshot, bool]:
        try:
            return self.session.call(lambda c: c.pull_snapshot(target.full_name, target.environment)), True
        except NotFound:
            if not missing_ok:
                raise
            logger.debug("No remote snapshot for %s", target)
            return Snapshot(), False

    # -- push ----------------------------------------------------------------

    def push(self, target: VaultRef, local: Snapshot, prune: bool = False) -> SyncResult:
        """Write local secrets to the vault, additively unless pruning.

        Args:
            target: Vault environment to write.
            local: Snapshot read from the local file.
            prune: Also delete vault keys missing locally.

        Returns:
            SyncResult with the diff and per-key outcomes.

        Raises:
            PartialSyncFailure: Some keys failed; no values included.
        """
        self._enter(Stage.AUTHENTICATE)
        self.session.ensure()

        self._enter(Stage.FETCH_REMOTE)
        remote, exists = self._fetch_vault(target, missing_ok=True)

        self._enter(Stage.COMPUTE_DIFF)
        plan = PushPlan(target=target, diff=diff(remote, local), prune=prune, remote_exists=exists)
        logger.info(
            "Push %s: %d to set, %d to delete, %d unchanged",
            target, len(plan.to_set), len(plan.to_delete), len(plan.diff.kept),
        )
        if not plan.has_work:
            self._enter(Stage.REPORT)
            return SyncResult(operation="push", target=str(target), diff=plan.diff, note="Already up to date")

        if not self._ask(plan):
            return SyncResult(operation="push", target=str(target), stage=Stage.CONFIRM, diff=plan.diff, confirmed=False)

        owner, repo, env = target.owner, target.repo, target.environment
        ops: list[KeyOp] = [
            (k, KeyAction.SET, lambda c, k=k: c.set_secret(owner, repo, env, k, local[k]))
            for k in plan.to_set
        ]
        ops += [
            (k, KeyAction.DELETE, lambda c, k=k: c.delete_secret(owner, repo, env, k))
            for k in plan.to_delete
        ]
        report = self._apply(ops)

        self._enter(Stage.REPORT)
        self._audit(
            "PUSH", f"Pushed {len(report.applied)} key(s) to {target}", target=str(target),
            keys=report.applied, failed=sorted(report.failed), prune=prune,
        )
        self._raise_partial(report)

        self.state.last_push = datetime.now(timezone.utc)
        self.state.last_push_target = str(target)
        self.state.push_count += 1
        self.state.last_error = None
        self._save_state()
        return SyncResult(operation="push", target=str(target), diff=plan.diff, report=report)

    # -- pull ----------------------------------------------------------------

    @staticmethod
    def _previous_contents(path: Path) -> Snapshot:
        """What the file held before a replacing pull; only feeds the report."""
        if not path.exists():
            return Snapshot()
        try:
            return parse(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not read %s (%s); replacing it", path, exc.__class__.__name__)
            return Snapshot()

    def pull(self, target: VaultRef, path: Path, keep_local: bool = False) -> SyncResult:
        """Replace a local file with the vault snapshot.

        The full snapshot is fetched before anything is written, and the
        file is swapped in atomically.

        Args:
            target: Vault environment to read.
            path: Local file to write.
            keep_local: Keep keys that only exist locally (vault wins on
                keys present on both sides).
        """
        if path.is_dir():
            raise ValidationError(f"{path} is a directory", hint="Pass --file with a file path")

        self._enter(Stage.AUTHENTICATE)
        self.session.ensure()

        self._enter(Stage.FETCH_REMOTE)
        remote, _ = self._fetch_vault(target, missing_ok=False)

        self._enter(Stage.COMPUTE_DIFF)
        if keep_local:
            local = read_env_file(path, strict=self.config.strict_parsing) if path.exists() else Snapshot()
        else:
            local = self._previous_contents(path)
        changes = diff(local, remote)
        final = remote.merged(local.only(changes.removed)) if keep_local else remote

        self._enter(Stage.APPLY)
        try:
            write_env_file(path, final)
        except OSError as exc:
            raise ValidationError(f"Cannot write {path}: {exc.__class__.__name__}") from None

        self._enter(Stage.REPORT)
        self._audit(
            "PULL", f"Pulled {len(remote)} key(s) from {target} into {path.name}",
            target=str(target), keys=sorted(remote), keep_local=keep_local,
        )
        self.state.last_pull = datetime.now(timezone.utc)
        self.state.last_pull_target = str(target)
        self.state.pull_count += 1
        self.state.last_error = None
        self._save_state()
        return SyncResult(operation="pull", target=str(target), diff=changes, written=len(final))

    # -- compare -------------------------------------------------------------

    def _load_side(self, repo: str, side: Side) -> tuple[str, Snapshot]:
        if isinstance(side, Path):
            return str(side), read_env_file(side, strict=self.config.strict_parsing)
        target = VaultRef.parse(repo, side)
        snapshot, _ = self._fetch_vault(target, missing_ok=False)
        return target.environment, snapshot

    def compare(self, repo: str, old: Side, new: Side) -> DiffView:
        """Diff two environments, or an environment against a file.

        Nothing is written; the caller renders the returned view.
        """
        if any(not isinstance(s, Path) for s in (old, new)):
            self._enter(Stage.AUTHENTICATE)
            self.session.ensure()

        self._enter(Stage.FETCH_REMOTE)
        old_label, old_snap = self._load_side(repo, old)
        new_label, new_snap = self._load_side(repo, new)

        self._enter(Stage.COMPUTE_DIFF)
        result = diff(old_snap, new_snap)

        self._enter(Stage.REPORT)
        self._audit(
            "DIFF", f"Compared {old_label} with {new_label}", target=repo, **result.counts(),
        )
        return DiffView(result=result, old_label=old_label, new_label=new_label, old=old_snap, new=new_snap)

    # -- provider sync -------------------------------------------------------

    def provider_sync(
        self,
        provider: str,
        repo: str,
        environment: str,
        direction: SyncDirection = SyncDirection.PUSH,
        project: Optional[str] = None,
        provider_environment: Optional[str] = None,
        allow_delete: bool = False,
    ) -> SyncResult:
        """Keep a provider project's variables in step with the vault.

        Push: vault -> provider (provider is "old"). Pull: provider ->
        vault (vault is "old"); pull never deletes vault keys. Keys that
        differ on both sides go to the direction's destination: vault
        wins on push, provider wins on pull.

        Raises:
            ValidationError: allow_delete combined with pull.
            ProviderError: Project lookup or provider API failure.
            PartialSyncFailure: A write failed; remaining writes skipped.
        """
        if allow_delete and direction == SyncDirection.PULL:
            raise ValidationError(
                "--allow-delete cannot be used with --pull",
                hint="Pull never deletes vault secrets; drop --allow-delete",
            )
        adapter = create_provider(provider)
        target = VaultRef.parse(repo, environment)

        self._enter(Stage.AUTHENTICATE)
        self.session.ensure()

        self._enter(Stage.FETCH_REMOTE)
        projects = self.session.call(adapter.list_projects)
        chosen = adapter.select_project(projects, target.full_name, project)
        penv = provider_environment or adapter.map_environment(target.environment)
        vault, _ = self._fetch_vault(target, missing_ok=direction == SyncDirection.PULL)
        remote = self.session.call(lambda c: adapter.get_snapshot(c, chosen.id, penv))

        self._enter(Stage.COMPUTE_DIFF)
        if direction == SyncDirection.PUSH:
            changes, source = diff(remote, vault), vault
        else:
            changes, source = diff(vault, remote), remote
        plan = ProviderPlan(
            provider=adapter.name,
            project_id=chosen.id,
            project_name=chosen.display_name,
            vault_environment=target.environment,
            provider_environment=penv,
            direction=direction,
            diff=changes,
            allow_delete=allow_delete,
        )
        if plan.conflict_note:
            logger.info(plan.conflict_note)
        label = f"{target} <-> {adapter.name}:{chosen.display_name}/{penv}"
        if not plan.has_work:
            self._enter(Stage.REPORT)
            return SyncResult(operation="sync", target=label, diff=changes, note="Already in sync")

        if not self._ask(plan):
            return SyncResult(operation="sync", target=label, stage=Stage.CONFIRM, diff=changes, confirmed=False)

        if direction == SyncDirection.PUSH:
            ops: list[KeyOp] = [
                (k, KeyAction.SET, lambda c, k=k: adapter.set_secret(c, chosen.id, penv, k, source[k]))
                for k in plan.to_set
            ]
            ops += [
                (k, KeyAction.DELETE, lambda c, k=k: adapter.delete_secret(c, chosen.id, penv, k))
                for k in plan.to_delete
            ]
        else:
            ops = [
                (k, KeyAction.SET,
                 lambda c, k=k: c.set_secret(target.owner, target.repo, target.environment, k, source[k]))
                for k in plan.to_set
            ]
        report = self._apply(ops, abort_on_failure=True)

        self._enter(Stage.REPORT)
        self._audit(
            "SYNC", f"{direction.value} {len(report.applied)} key(s) {label}", target=str(target),
            provider=adapter.name, keys=report.applied, failed=sorted(report.failed),
        )
        self._raise_partial(report)
        self.state.sync_count += 1
        self.state.last_error = None
        self._save_state()
        return SyncResult(operation="sync", target=label, diff=changes, report=report, note=plan.conflict_note)
