"""Records, tasks and outcomes passed between the builder, index and executor."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class IdentityRecord:
    """One directory user: the opaque Cognito username and its email attribute."""

    opaque_id: str
    email: str


class Operation(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    UNKNOWN_USER = "unknown_user"
    AMBIGUOUS_EMAIL = "ambiguous_email"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class MutationTask:
    """A single (email, group) membership change."""

    target_email: str
    group: str
    operation: Operation


@dataclass(frozen=True)
class TaskOutcome:
    """Terminal result of a MutationTask. Exactly one is produced per task."""

    task: MutationTask
    kind: OutcomeKind
    reason: Optional[str] = None
    attempts: int = 0
    opaque_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCEEDED

    def sort_key(self) -> tuple[str, str, str, str, int]:
        return (
            self.task.target_email,
            self.task.group,
            self.kind.value,
            self.reason or "",
            self.attempts,
        )
