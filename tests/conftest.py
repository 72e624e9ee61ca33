import threading
import time
from collections import defaultdict

import pytest

from batch_cognito.directory import Page
from batch_cognito.errors import DirectoryError
from batch_cognito.index import IdentityIndex
from batch_cognito.models import IdentityRecord


def throttled(message="Rate exceeded"):
    return DirectoryError(message, retryable=True, code="TooManyRequestsException")


def denied(message="Access denied"):
    return DirectoryError(message, retryable=False, code="NotAuthorizedException")


class FakeDirectory:
    """In-memory DirectoryClient.

    ``pages`` is a list of record lists; the cursor for page i is str(i).
    ``list_errors`` and ``mutate_errors`` hold exceptions raised (in order)
    before the call succeeds.
    """

    def __init__(self, pages=None, list_errors=None, mutate_errors=None, delay=0.0):
        self.pages = pages or [[]]
        self.list_errors = defaultdict(list, list_errors or {})
        self.mutate_errors = defaultdict(list, mutate_errors or {})
        self.delay = delay
        self.list_calls = []
        self.mutate_calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def list_page(self, cursor):
        self.list_calls.append(cursor)
        i = int(cursor or 0)
        errors = self.list_errors[i]
        if errors:
            raise errors.pop(0)
        next_cursor = str(i + 1) if i + 1 < len(self.pages) else None
        return Page(records=list(self.pages[i]), next_cursor=next_cursor)

    def mutate_group(self, opaque_id, group, operation):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.mutate_calls.append((opaque_id, group, operation))
            errors = self.mutate_errors[(opaque_id, group)]
            error = errors.pop(0) if errors else None
        try:
            if self.delay:
                time.sleep(self.delay)
            if error is not None:
                raise error
        finally:
            with self._lock:
                self.in_flight -= 1


class AlwaysFails(FakeDirectory):
    def __init__(self, error_factory, **kwargs):
        super().__init__(**kwargs)
        self.error_factory = error_factory

    def mutate_group(self, opaque_id, group, operation):
        super().mutate_group(opaque_id, group, operation)
        raise self.error_factory()


class CeilingRng:
    """Jitter source that always picks the full backoff ceiling."""

    def uniform(self, a, b):
        return b


@pytest.fixture
def records():
    return [
        IdentityRecord("ID1", "alice@example.com"),
        IdentityRecord("ID2", "bob@example.com"),
    ]


@pytest.fixture
def index(records):
    return IdentityIndex.from_records(records)
