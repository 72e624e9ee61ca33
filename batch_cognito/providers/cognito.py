"""AWS Cognito user pool directory client: ListUsers and admin group mutations."""

from __future__ import annotations

import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from batch_cognito.directory import Page
from batch_cognito.errors import DirectoryError
from batch_cognito.models import IdentityRecord, Operation

logger = logging.getLogger("batch_cognito.providers.cognito")

# Documented maximum page size for ListUsers.
MAX_PAGE_SIZE = 60

RETRYABLE_CODES = frozenset({
    "TooManyRequestsException",
    "ThrottlingException",
    "Throttling",
    "LimitExceededException",
    "InternalErrorException",
    "InternalServerError",
    "ServiceUnavailable",
    "RequestTimeout",
    "RequestTimeoutException",
})


def classify_error(exc: Exception) -> DirectoryError:
    """Map a botocore failure onto a retryable or permanent DirectoryError."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        message = error.get("Message") or str(exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        retryable = code in RETRYABLE_CODES or status >= 500
        return DirectoryError(message, retryable=retryable, code=code or None)
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return DirectoryError(str(exc), retryable=True, code=type(exc).__name__)
    return DirectoryError(str(exc), retryable=False, code=type(exc).__name__)


def extract_record(user: dict[str, Any]) -> IdentityRecord:
    """Pull the username and ``email`` attribute out of a Cognito UserType."""
    username = user.get("Username")
    if not username:
        raise DirectoryError("ListUsers returned a user without a Username", retryable=False,
                             code="MalformedResponse")
    email = ""
    for attr in user.get("Attributes", []):
        if attr.get("Name") == "email":
            email = attr.get("Value") or ""
            break
    return IdentityRecord(opaque_id=username, email=email)


class CognitoDirectoryClient:
    """DirectoryClient over the ``cognito-idp`` API for one user pool."""

    def __init__(
        self,
        user_pool_id: str,
        region: Optional[str] = None,
        page_size: int = MAX_PAGE_SIZE,
        client: Any = None,
    ) -> None:
        if not user_pool_id:
            raise ValueError("user_pool_id is required")
        self.user_pool_id = user_pool_id
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self._client = client or boto3.client("cognito-idp", region_name=region)

    def list_page(self, cursor: Optional[str]) -> Page:
        params: dict[str, Any] = {"UserPoolId": self.user_pool_id, "Limit": self.page_size}
        if cursor:
            params["PaginationToken"] = cursor
        try:
            response = self._client.list_users(**params)
        except (ClientError, BotoCoreError) as exc:
            raise classify_error(exc) from exc

        records = [extract_record(u) for u in response.get("Users", [])]
        next_cursor = response.get("PaginationToken") or None
        logger.debug("Fetched %d users (more=%s)", len(records), next_cursor is not None)
        return Page(records=records, next_cursor=next_cursor)

    def mutate_group(self, opaque_id: str, group: str, operation: Operation) -> None:
        if operation is Operation.ADD:
            call = self._client.admin_add_user_to_group
        else:
            call = self._client.admin_remove_user_from_group
        try:
            call(UserPoolId=self.user_pool_id, Username=opaque_id, GroupName=group)
        except (ClientError, BotoCoreError) as exc:
            raise classify_error(exc) from exc
