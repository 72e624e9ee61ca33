"""Paginated sweep of the directory into an ordered record list."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from batch_cognito.backoff import backoff_delay
from batch_cognito.directory import DirectoryClient, Page
from batch_cognito.errors import (
    BuildTimeoutError,
    DirectoryError,
    DuplicateIdentityError,
    IndexBuildError,
)
from batch_cognito.index import IdentityIndex, is_storable
from batch_cognito.models import IdentityRecord

logger = logging.getLogger("batch_cognito.builder")


@dataclass
class BuildResult:
    records: list[IdentityRecord] = field(default_factory=list)
    pages: int = 0
    rejected: list[IdentityRecord] = field(default_factory=list)

    def to_index(self) -> IdentityIndex:
        return IdentityIndex.from_records(self.records)


class IndexBuilder:
    """Drives ``list_page`` from the first page until no cursor is returned.

    Either every page is fetched and a complete BuildResult is returned, or
    IndexBuildError is raised and nothing is returned.
    """

    def __init__(
        self,
        client: DirectoryClient,
        max_attempts: int = 5,
        base_delay: float = 0.2,
        max_delay: float = 20.0,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.client = client
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    def build(self) -> BuildResult:
        result = BuildResult()
        seen: dict[str, int] = {}
        cursor: Optional[str] = None
        deadline = self._clock() + self.timeout if self.timeout is not None else None
        started = self._clock()

        while True:
            page = self._fetch(cursor, result.pages, deadline)
            page_no = result.pages + 1
            for record in page.records:
                first = seen.get(record.opaque_id)
                if first is not None:
                    raise IndexBuildError(
                        result.pages, DuplicateIdentityError(record.opaque_id, first, page_no)
                    )
                seen[record.opaque_id] = page_no
                if not is_storable(record):
                    logger.warning(
                        "Skipping user %s: email contains a delimiter or line break",
                        record.opaque_id,
                    )
                    result.rejected.append(record)
                    continue
                result.records.append(record)
            result.pages = page_no
            logger.debug(
                "Page %d: %d users (total %d)", page_no, len(page.records), len(result.records),
                extra={"pages": page_no, "records": len(result.records)},
            )
            if not page.next_cursor:
                break
            cursor = page.next_cursor

        logger.info(
            "Index build complete: %d users over %d page(s)", len(result.records), result.pages,
            extra={
                "pages": result.pages,
                "records": len(result.records),
                "duration_s": round(self._clock() - started, 3),
            },
        )
        return result

    def _fetch(self, cursor: Optional[str], pages_completed: int, deadline: Optional[float]) -> Page:
        """Request one page, retrying the same cursor on retryable failures."""
        attempt = 0
        while True:
            if deadline is not None and self._clock() >= deadline:
                raise IndexBuildError(
                    pages_completed,
                    BuildTimeoutError(f"index build exceeded {self.timeout}s"),
                )
            attempt += 1
            try:
                return self.client.list_page(cursor)
            except DirectoryError as exc:
                if not exc.retryable:
                    raise IndexBuildError(pages_completed, exc) from exc
                if attempt >= self.max_attempts:
                    logger.error(
                        "Giving up on page %d after %d attempts: %s",
                        pages_completed + 1, attempt, exc,
                        extra={"attempts": attempt},
                    )
                    raise IndexBuildError(pages_completed, exc) from exc
                delay = backoff_delay(attempt, self.base_delay, self.max_delay, self._rng)
                if deadline is not None:
                    delay = min(delay, max(deadline - self._clock(), 0.0))
                logger.warning(
                    "Throttled listing page %d, sleeping %.2fs (attempt %d/%d): %s",
                    pages_completed + 1, delay, attempt, self.max_attempts, exc,
                    extra={"attempts": attempt},
                )
                self._sleep(delay)
