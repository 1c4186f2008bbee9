"""
Sync data models -- targets, stages, outcomes and persisted state.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..diff import DiffResult
from ..envfile import normalize_environment
from ..errors import ValidationError

DEFAULT_ENVIRONMENT = "development"


class SyncDirection(str, Enum):
    """Sync operation direction."""

    PUSH = "push"
    PULL = "pull"


class Stage(str, Enum):
    """Steps of one sync invocation, in order."""

    AUTHENTICATE = "authenticate"
    FETCH_REMOTE = "fetch_remote"
    COMPUTE_DIFF = "compute_diff"
    CONFIRM = "confirm"
    APPLY = "apply"
    REPORT = "report"


class KeyAction(str, Enum):
    SET = "set"
    DELETE = "delete"


class KeyStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


class VaultRef(BaseModel):
    """Which remote secret set a command targets."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    environment: str = DEFAULT_ENVIRONMENT

    @classmethod
    def parse(cls, full_name: str, environment: Optional[str] = None) -> "VaultRef":
        """Build from `owner/repo` and an optional environment name.

        Raises:
            ValidationError: Malformed repository or environment name.
        """
        parts = (full_name or "").strip().split("/")
        if len(parts) != 2 or not all(parts):
            raise ValidationError(
                f"Invalid repository: {full_name!r}",
                hint="Use the form owner/repo (or run inside a GitHub clone)",
            )
        env = normalize_environment(environment) if environment else DEFAULT_ENVIRONMENT
        return cls(owner=parts[0], repo=parts[1], environment=env)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def with_environment(self, environment: str) -> "VaultRef":
        return VaultRef(owner=self.owner, repo=self.repo, environment=normalize_environment(environment))

    def __str__(self) -> str:
        return f"{self.full_name}:{self.environment}"


class KeyOutcome(BaseModel):
    """Result of one key write. Carries no secret value."""

    key: str
    action: KeyAction
    status: KeyStatus
    error_category: Optional[str] = None


class ApplyReport(BaseModel):
    """All key outcomes of one APPLY phase, sorted by key."""

    outcomes: list[KeyOutcome] = Field(default_factory=list)

    @property
    def applied(self) -> list[str]:
        return [o.key for o in self.outcomes if o.status == KeyStatus.APPLIED]

    @property
    def failed(self) -> dict[str, str]:
        return {
            o.key: o.error_category or "ERROR"
            for o in self.outcomes if o.status == KeyStatus.FAILED
        }

    @property
    def skipped(self) -> list[str]:
        return [o.key for o in self.outcomes if o.status == KeyStatus.SKIPPED]

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped


class PushPlan(BaseModel):
    """What a push would do; shown at CONFIRM."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    target: VaultRef
    diff: DiffResult
    prune: bool = False
    remote_exists: bool = True

    @property
    def to_set(self) -> list[str]:
        return sorted(self.diff.added + self.diff.changed)

    @property
    def to_delete(self) -> list[str]:
        return list(self.diff.removed) if self.prune else []

    @property
    def has_work(self) -> bool:
        return bool(self.to_set or self.to_delete)


class ProviderPlan(BaseModel):
    """What a provider sync would do; shown at CONFIRM."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    provider: str
    project_id: str
    project_name: str
    vault_environment: str
    provider_environment: str
    direction: SyncDirection
    diff: DiffResult
    allow_delete: bool = False

    @property
    def to_set(self) -> list[str]:
        return sorted(self.diff.added + self.diff.changed)

    @property
    def to_delete(self) -> list[str]:
        return list(self.diff.removed) if self.allow_delete else []

    @property
    def left_in_place(self) -> list[str]:
        return [] if self.allow_delete else list(self.diff.removed)

    @property
    def has_work(self) -> bool:
        return bool(self.to_set or self.to_delete)

    @property
    def conflict_note(self) -> Optional[str]:
        """How keys changed on both sides were resolved, if any were."""
        if not self.diff.changed:
            return None
        winner = "vault" if self.direction == SyncDirection.PUSH else self.provider
        return (
            f"{len(self.diff.changed)} key(s) differ between the vault and {self.provider}; "
            f"{winner} wins on {self.direction.value}"
        )


class SyncResult(BaseModel):
    """What REPORT returns to the caller."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation: str
    target: str
    stage: Stage = Stage.REPORT
    diff: Optional[DiffResult] = None
    report: ApplyReport = Field(default_factory=ApplyReport)
    confirmed: bool = True
    written: int = 0
    note: Optional[str] = None


class SyncState(BaseModel):
    """Current sync state persisted to disk."""

    last_push: Optional[datetime] = None
    last_pull: Optional[datetime] = None
    last_push_target: Optional[str] = None
    last_pull_target: Optional[str] = None
    push_count: int = 0
    pull_count: int = 0
    sync_count: int = 0
    last_error: Optional[str] = None
