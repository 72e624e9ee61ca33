"""Exception hierarchy.

Build and persistence errors are fatal to the command that raised them.
DirectoryError is raised by directory clients and classified by the builder
and the executor; inside the executor it never escapes a single task.
"""

from __future__ import annotations

from typing import Optional


class BatchCognitoError(Exception):
    """Base class for all errors raised by batch_cognito."""


class ConfigError(BatchCognitoError):
    """Invalid or missing configuration."""


class DirectoryError(BatchCognitoError):
    """A directory call failed.

    ``retryable`` is True for throttling and transient server faults, False
    for auth, not-found, validation and malformed-response failures.
    """

    def __init__(self, message: str, *, retryable: bool, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        return f"{self.code}: {base}" if self.code else base


class DuplicateIdentityError(BatchCognitoError):
    """The same opaque id was returned twice during one pagination sweep."""

    def __init__(self, opaque_id: str, first_page: int, second_page: int) -> None:
        super().__init__(
            f"opaque id {opaque_id!r} returned on page {first_page} and again on page {second_page}"
        )
        self.opaque_id = opaque_id
        self.first_page = first_page
        self.second_page = second_page


class BuildTimeoutError(BatchCognitoError):
    """The index build exceeded its overall time budget."""


class IndexBuildError(BatchCognitoError):
    """The pagination sweep did not complete; no index was produced."""

    def __init__(self, pages_completed: int, cause: BaseException) -> None:
        super().__init__(f"index build failed after {pages_completed} page(s): {cause}")
        self.pages_completed = pages_completed
        self.cause = cause


class PersistError(BatchCognitoError):
    """Reading or writing the persisted identity index failed."""
