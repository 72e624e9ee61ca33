"""The directory capabilities the builder and executor depend on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from batch_cognito.models import IdentityRecord, Operation


@dataclass(frozen=True)
class Page:
    records: list[IdentityRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None


class DirectoryClient(Protocol):
    """Listing and group mutation. Failures raise DirectoryError."""

    def list_page(self, cursor: Optional[str]) -> Page:
        ...

    def mutate_group(self, opaque_id: str, group: str, operation: Operation) -> None:
        ...
