"""Order-independent aggregation of task outcomes."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from batch_cognito.models import OutcomeKind, TaskOutcome


def _zero_counts() -> dict[str, int]:
    return {kind.value: 0 for kind in OutcomeKind}


@dataclass(frozen=True)
class RunSummary:
    """Counts per outcome kind plus every non-success outcome.

    ``failures`` is kept sorted by task, so two summaries built from the same
    outcomes compare equal whatever order the outcomes arrived in.
    """

    counts: dict[str, int] = field(default_factory=_zero_counts)
    failures: tuple[TaskOutcome, ...] = ()

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[TaskOutcome]) -> "RunSummary":
        counts = _zero_counts()
        failures = []
        for outcome in outcomes:
            counts[outcome.kind.value] += 1
            if not outcome.succeeded:
                failures.append(outcome)
        return cls(counts=counts, failures=tuple(sorted(failures, key=TaskOutcome.sort_key)))

    def merge(self, other: "RunSummary") -> "RunSummary":
        counts = Counter(self.counts)
        counts.update(other.counts)
        merged = _zero_counts()
        merged.update(counts)
        return RunSummary(
            counts=merged,
            failures=tuple(sorted(self.failures + other.failures, key=TaskOutcome.sort_key)),
        )

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def succeeded(self) -> int:
        return self.counts[OutcomeKind.SUCCEEDED.value]

    @property
    def ok(self) -> bool:
        return self.succeeded == self.total

    def failures_of(self, kind: OutcomeKind) -> list[TaskOutcome]:
        return [f for f in self.failures if f.kind is kind]

    def nonzero_counts(self) -> dict[str, int]:
        return {k: v for k, v in self.counts.items() if v}


class ResultAggregator:
    """Collects outcomes from concurrent tasks.

    The lock only guards the in-memory counters and list; it is never held
    across a directory call.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = _zero_counts()
        self._outcomes: list[TaskOutcome] = []

    def record(self, outcome: TaskOutcome) -> None:
        with self._lock:
            self._counts[outcome.kind.value] += 1
            self._outcomes.append(outcome)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def summary(self) -> RunSummary:
        with self._lock:
            outcomes = list(self._outcomes)
        return RunSummary.from_outcomes(outcomes)
