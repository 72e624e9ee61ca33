import time

import pytest

import batch_cognito.executor as executor_module
from batch_cognito.executor import MutationExecutor, unique_emails, unique_groups
from batch_cognito.index import IdentityIndex
from batch_cognito.models import IdentityRecord, Operation, OutcomeKind

from tests.conftest import AlwaysFails, CeilingRng, FakeDirectory, denied, throttled


def outcomes_by_key(summary):
    return {(o.task.target_email, o.task.group): o for o in summary.failures}


def test_add_known_and_unknown_user(index):
    client = FakeDirectory()
    summary = MutationExecutor(client, concurrency=2).execute(
        index, ["alice@example.com", "carol@example.com"], ["G"], Operation.ADD
    )

    assert summary.nonzero_counts() == {"succeeded": 1, "unknown_user": 1}
    assert not summary.ok
    assert client.mutate_calls == [("ID1", "G", Operation.ADD)]
    (unknown,) = summary.failures
    assert unknown.kind is OutcomeKind.UNKNOWN_USER
    assert unknown.task.target_email == "carol@example.com"


def test_ambiguous_email_never_reaches_directory():
    index = IdentityIndex.from_records([
        IdentityRecord("ID1", "dana@example.com"),
        IdentityRecord("ID2", "dana@example.com"),
    ])
    client = FakeDirectory()

    summary = MutationExecutor(client).execute(index, ["Dana@Example.com"], ["G1", "G2"], Operation.ADD)

    assert summary.nonzero_counts() == {"ambiguous_email": 2}
    assert client.mutate_calls == []


def test_one_call_per_group_and_remove_flag(index):
    client = FakeDirectory()
    summary = MutationExecutor(client, concurrency=4).execute(
        index, ["alice@example.com", "bob@example.com"], ["G1", "G2", "G3"], Operation.REMOVE
    )

    assert summary.ok
    assert summary.succeeded == 6
    assert sorted(client.mutate_calls) == sorted(
        (uid, g, Operation.REMOVE) for uid in ("ID1", "ID2") for g in ("G1", "G2", "G3")
    )


def test_duplicate_targets_collapse(index):
    client = FakeDirectory()
    summary = MutationExecutor(client).execute(
        index, ["alice@example.com", " ALICE@example.com", ""], ["G", "G"], Operation.ADD
    )
    assert summary.total == 1
    assert len(client.mutate_calls) == 1


def test_concurrency_limit_is_never_exceeded():
    records = [IdentityRecord(f"ID{i}", f"user{i}@example.com") for i in range(12)]
    index = IdentityIndex.from_records(records)
    client = FakeDirectory(delay=0.02)

    summary = MutationExecutor(client, concurrency=3).execute(
        index, [r.email for r in records], ["G1", "G2"], Operation.ADD
    )

    assert summary.succeeded == 24
    assert 1 <= client.max_in_flight <= 3


def test_failure_is_isolated(index):
    client = FakeDirectory(mutate_errors={("ID1", "G1"): [denied("Group not found")]})

    summary = MutationExecutor(client, concurrency=2, base_delay=0).execute(
        index, ["alice@example.com", "bob@example.com"], ["G1", "G2"], Operation.ADD
    )

    assert summary.nonzero_counts() == {"succeeded": 3, "failed": 1}
    failed = outcomes_by_key(summary)[("alice@example.com", "G1")]
    assert failed.kind is OutcomeKind.FAILED
    assert failed.attempts == 1
    assert "Group not found" in failed.reason


def test_unexpected_exception_is_recorded_not_raised(index):
    client = FakeDirectory(mutate_errors={("ID2", "G"): [RuntimeError("boom")]})

    summary = MutationExecutor(client).execute(
        index, ["alice@example.com", "bob@example.com"], ["G"], Operation.ADD
    )

    assert summary.nonzero_counts() == {"succeeded": 1, "failed": 1}
    assert "boom" in summary.failures[0].reason


def test_throttled_call_is_retried_until_success(index):
    client = FakeDirectory(mutate_errors={("ID1", "G"): [throttled(), throttled()]})

    summary = MutationExecutor(client, max_attempts=3, base_delay=0).execute(
        index, ["alice@example.com"], ["G"], Operation.ADD
    )

    assert summary.ok
    assert len(client.mutate_calls) == 3


def test_retries_exhausted(index):
    client = AlwaysFails(throttled)

    summary = MutationExecutor(client, max_attempts=3, base_delay=0).execute(
        index, ["alice@example.com"], ["G"], Operation.ADD
    )

    (failed,) = summary.failures
    assert failed.kind is OutcomeKind.FAILED
    assert failed.attempts == 3
    assert "gave up after 3 attempts" in failed.reason
    assert len(client.mutate_calls) == 3


def test_permanent_error_not_retried(index):
    client = AlwaysFails(denied)

    summary = MutationExecutor(client, max_attempts=5, base_delay=0).execute(
        index, ["alice@example.com"], ["G"], Operation.ADD
    )

    assert summary.failures[0].attempts == 1
    assert len(client.mutate_calls) == 1


def test_deadline_aborts_queued_tasks_and_lets_in_flight_finish():
    records = [IdentityRecord(f"ID{i}", f"user{i}@example.com") for i in range(5)]
    index = IdentityIndex.from_records(records)
    client = FakeDirectory(delay=0.3)

    summary = MutationExecutor(client, concurrency=1, timeout=0.1).execute(
        index, [r.email for r in records], ["G"], Operation.ADD
    )

    assert summary.total == 5
    assert summary.counts["succeeded"] == 1
    assert summary.counts["aborted"] == 4
    assert len(client.mutate_calls) == 1
    assert all(o.reason == "deadline exceeded" for o in summary.failures)


def test_deadline_aborts_task_waiting_in_backoff(index):
    client = AlwaysFails(throttled)

    summary = MutationExecutor(
        client, max_attempts=10, base_delay=5.0, timeout=0.1, rng=CeilingRng()
    ).execute(index, ["alice@example.com"], ["G"], Operation.ADD)

    (aborted,) = summary.failures
    assert aborted.kind is OutcomeKind.ABORTED
    assert aborted.attempts == 1
    assert len(client.mutate_calls) == 1


def test_throttled_reply_after_deadline_is_aborted_not_retried(index):
    client = AlwaysFails(throttled, delay=0.3)

    summary = MutationExecutor(client, max_attempts=5, base_delay=0, timeout=0.1).execute(
        index, ["alice@example.com"], ["G"], Operation.ADD
    )

    (aborted,) = summary.failures
    assert aborted.kind is OutcomeKind.ABORTED
    assert aborted.reason == "deadline exceeded"
    assert aborted.attempts == 1
    assert len(client.mutate_calls) == 1


def test_deadline_counts_time_spent_resolving(index, monkeypatch):
    real_resolve = executor_module.resolve

    def slow_resolve(idx, email):
        time.sleep(0.2)
        return real_resolve(idx, email)

    monkeypatch.setattr(executor_module, "resolve", slow_resolve)
    client = FakeDirectory()

    summary = MutationExecutor(client, timeout=0.1).execute(
        index, ["alice@example.com"], ["G1", "G2"], Operation.ADD
    )

    assert summary.nonzero_counts() == {"aborted": 2}
    assert client.mutate_calls == []


def test_each_task_gets_exactly_one_outcome_under_mixed_pressure():
    records = [IdentityRecord(f"ID{i}", f"user{i}@example.com") for i in range(6)]
    index = IdentityIndex.from_records(records)
    client = FakeDirectory(
        delay=0.05,
        mutate_errors={("ID0", "G"): [throttled()], ("ID1", "G"): [denied()]},
    )

    summary = MutationExecutor(client, concurrency=2, base_delay=0, timeout=0.12).execute(
        index, [r.email for r in records] + ["nobody@example.com"], ["G"], Operation.ADD
    )

    assert summary.total == 7
    keys = [(o.task.target_email, o.task.group) for o in summary.failures]
    assert len(keys) == len(set(keys))
    assert summary.counts["unknown_user"] == 1
    assert summary.counts["failed"] == 1


def test_progress_receives_running_counts(index):
    snapshots = []
    MutationExecutor(FakeDirectory(), progress=snapshots.append).execute(
        index, ["alice@example.com", "bob@example.com", "zed@example.com"], ["G"], Operation.ADD
    )

    assert len(snapshots) == 2
    assert sum(snapshots[-1].values()) == 3


def test_no_targets(index):
    summary = MutationExecutor(FakeDirectory()).execute(index, [], ["G"], Operation.ADD)
    assert summary.total == 0
    assert summary.ok


@pytest.mark.parametrize("kwargs", [{"concurrency": 0}, {"max_attempts": 0}])
def test_invalid_limits(kwargs):
    with pytest.raises(ValueError):
        MutationExecutor(FakeDirectory(), **kwargs)


def test_unique_helpers():
    assert unique_emails(["B@x.com", "b@x.com ", "", "a@x.com"]) == ["b@x.com", "a@x.com"]
    assert unique_groups(["G1", " G1", "", "G2"]) == ["G1", "G2"]
