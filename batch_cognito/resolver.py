"""Email -> opaque id resolution against a loaded IdentityIndex."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from batch_cognito.index import EntryState, IdentityIndex
from batch_cognito.models import OutcomeKind
from batch_cognito.normalize import normalize_email


@dataclass(frozen=True)
class Resolution:
    email: str
    opaque_id: Optional[str] = None
    # None when resolved, otherwise UNKNOWN_USER or AMBIGUOUS_EMAIL
    unresolved: Optional[OutcomeKind] = None

    @property
    def resolved(self) -> bool:
        return self.opaque_id is not None


def resolve(index: IdentityIndex, email: str) -> Resolution:
    key = normalize_email(email)
    entry = index.lookup(key)
    if entry.state is EntryState.PRESENT:
        return Resolution(key, opaque_id=entry.opaque_id)
    if entry.state is EntryState.AMBIGUOUS:
        return Resolution(key, unresolved=OutcomeKind.AMBIGUOUS_EMAIL)
    return Resolution(key, unresolved=OutcomeKind.UNKNOWN_USER)
