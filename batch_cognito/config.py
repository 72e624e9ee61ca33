"""Configuration via environment variables, overridable from the command line.

Supports:
  - Environment variables (CI, containers)
  - .env files in the working directory (local dev)
  - AWS credentials from the default boto3 chain (profiles, SSO, instance roles)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from dotenv import find_dotenv, load_dotenv

from batch_cognito.errors import ConfigError


@dataclass(frozen=True)
class CognitoConfig:
    user_pool_id: str = ""
    region: Optional[str] = None  # None = boto3 default resolution
    page_size: int = 60


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    base_delay: float = 0.2
    max_delay: float = 20.0


@dataclass(frozen=True)
class ExecutorConfig:
    concurrency: int = 1
    timeout: Optional[float] = None  # seconds; None = no run deadline


@dataclass(frozen=True)
class BatchConfig:
    cognito: CognitoConfig = field(default_factory=CognitoConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    log_level: Optional[str] = None

    def with_overrides(
        self,
        user_pool_id: Optional[str] = None,
        region: Optional[str] = None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> "BatchConfig":
        """Apply command-line values on top of the environment. None keeps the current value."""
        cognito = replace(
            self.cognito,
            **_present(user_pool_id=user_pool_id, region=region),
        )
        executor = replace(self.executor, **_present(concurrency=concurrency, timeout=timeout))
        retry = replace(self.retry, **_present(max_attempts=max_attempts))
        updated = replace(self, cognito=cognito, executor=executor, retry=retry)
        updated.validate()
        return updated

    def validate(self) -> None:
        if self.executor.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")
        if self.retry.max_attempts < 1:
            raise ConfigError("max attempts must be at least 1")
        if self.executor.timeout is not None and self.executor.timeout <= 0:
            raise ConfigError("timeout must be a positive number of seconds")
        if not 1 <= self.cognito.page_size <= 60:
            raise ConfigError("page size must be between 1 and 60")
        if self.retry.base_delay < 0 or self.retry.max_delay < 0:
            raise ConfigError("retry delays must not be negative")


def _present(**values: Any) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def load_config() -> BatchConfig:
    """Load configuration from environment variables (and .env, if present).

    The user pool id is not required here; commands that talk to Cognito
    check for it once command-line overrides have been applied.
    """
    load_dotenv(find_dotenv(usecwd=True))

    cognito = CognitoConfig(
        user_pool_id=os.environ.get("COGNITO_USER_POOL_ID", ""),
        region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or None,
        page_size=_env_int("BATCH_COGNITO_PAGE_SIZE", 60),
    )
    retry = RetryConfig(
        max_attempts=_env_int("BATCH_COGNITO_MAX_ATTEMPTS", 5),
        base_delay=_env_float("BATCH_COGNITO_BASE_DELAY", 0.2),
        max_delay=_env_float("BATCH_COGNITO_MAX_DELAY", 20.0),
    )
    executor = ExecutorConfig(
        concurrency=_env_int("BATCH_COGNITO_CONCURRENCY", 1),
        timeout=_env_float("BATCH_COGNITO_TIMEOUT", None),
    )
    config = BatchConfig(
        cognito=cognito,
        retry=retry,
        executor=executor,
        log_level=os.environ.get("LOG_LEVEL") or None,
    )
    config.validate()
    return config
