"""CLI entry point: sync, add, del."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from botocore.exceptions import BotoCoreError

from batch_cognito import __version__
from batch_cognito.builder import IndexBuilder
from batch_cognito.config import BatchConfig, load_config
from batch_cognito.errors import BatchCognitoError, ConfigError
from batch_cognito.executor import MutationExecutor
from batch_cognito.index import load_index, persist_index, write_index
from batch_cognito.logging_config import configure_logging
from batch_cognito.models import Operation, OutcomeKind
from batch_cognito.providers.cognito import CognitoDirectoryClient
from batch_cognito.summary import RunSummary

logger = logging.getLogger("batch_cognito.cli")

EXIT_OK = 0
EXIT_TASK_FAILURES = 1
EXIT_FATAL = 2

_KIND_LABELS = {
    OutcomeKind.SUCCEEDED: "Succeeded",
    OutcomeKind.UNKNOWN_USER: "Unknown user",
    OutcomeKind.AMBIGUOUS_EMAIL: "Ambiguous email",
    OutcomeKind.FAILED: "Failed",
    OutcomeKind.ABORTED: "Aborted",
}


def _make_client(config: BatchConfig) -> CognitoDirectoryClient:
    if not config.cognito.user_pool_id:
        raise ConfigError("a user pool id is required (--pool-id or COGNITO_USER_POOL_ID)")
    try:
        return CognitoDirectoryClient(
            user_pool_id=config.cognito.user_pool_id,
            region=config.cognito.region,
            page_size=config.cognito.page_size,
        )
    except BotoCoreError as exc:
        # e.g. NoRegionError when neither --region nor the AWS config names one
        raise ConfigError(f"cannot create Cognito client: {exc}") from exc


def _config_from_args(args: argparse.Namespace, base: BatchConfig) -> BatchConfig:
    return base.with_overrides(
        user_pool_id=args.pool_id,
        region=args.region,
        concurrency=getattr(args, "concurrency", None),
        timeout=args.timeout,
        max_attempts=args.max_attempts,
    )


def read_emails(path: str) -> list[str]:
    """One email per line; blank lines and ``#`` comments are ignored."""
    try:
        with open(path, encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except OSError as exc:
        raise ConfigError(f"cannot read emails file {path}: {exc}") from exc
    return [line.strip() for line in lines if line.strip() and not line.lstrip().startswith("#")]


def parse_groups(values: list[str]) -> list[str]:
    """Flatten repeated and comma-separated --group values."""
    groups: list[str] = []
    for value in values or []:
        groups.extend(part.strip() for part in value.split(",") if part.strip())
    return groups


def format_summary(summary: RunSummary) -> list[str]:
    """Counts line, then one table per non-success outcome kind."""
    lines = [
        "  ".join(f"{_KIND_LABELS[kind]}: {summary.counts[kind.value]}" for kind in OutcomeKind)
    ]
    fmt = "  {:<40}  {:<24}  {}"
    for kind in OutcomeKind:
        if kind is OutcomeKind.SUCCEEDED:
            continue
        outcomes = summary.failures_of(kind)
        if not outcomes:
            continue
        lines.append("")
        lines.append(f"{_KIND_LABELS[kind]} ({len(outcomes)}):")
        lines.append(fmt.format("EMAIL", "GROUP", "REASON"))
        for outcome in outcomes:
            reason = outcome.reason or ""
            if outcome.attempts:
                reason = f"{reason} [attempts={outcome.attempts}]".strip()
            lines.append(fmt.format(outcome.task.target_email, outcome.task.group, reason))
    return lines


def cmd_sync(args: argparse.Namespace, base: BatchConfig) -> int:
    """Snapshot every user in the pool into a username,email index."""
    config = _config_from_args(args, base)
    client = _make_client(config)
    logger.info(
        "Starting users sync from Cognito user pool",
        extra={"pool_id": config.cognito.user_pool_id},
    )

    builder = IndexBuilder(
        client,
        max_attempts=config.retry.max_attempts,
        base_delay=config.retry.base_delay,
        max_delay=config.retry.max_delay,
        timeout=config.executor.timeout,
    )
    result = builder.build()
    if result.rejected:
        logger.warning("%d user(s) left out of the index", len(result.rejected))

    if args.file and args.file != "-":
        persist_index(result.records, args.file)
    else:
        write_index(result.records, sys.stdout)
        sys.stdout.flush()
    return EXIT_OK


def _cmd_mutate(args: argparse.Namespace, base: BatchConfig, operation: Operation) -> int:
    config = _config_from_args(args, base)
    groups = parse_groups(args.groups)
    if not groups:
        raise ConfigError("at least one --group is required")
    emails = read_emails(args.emails_file)
    index = load_index(args.index_file)
    client = _make_client(config)

    executor = MutationExecutor(
        client,
        concurrency=config.executor.concurrency,
        max_attempts=config.retry.max_attempts,
        timeout=config.executor.timeout,
        base_delay=config.retry.base_delay,
        max_delay=config.retry.max_delay,
        progress=lambda counts: logger.debug("Progress", extra={"counts": counts}),
    )
    summary = executor.execute(index, emails, groups, operation)

    lines = format_summary(summary)
    logger.info("Summary: %s", lines[0], extra={"counts": summary.counts})
    for line in lines:
        print(line)
    return EXIT_OK if summary.ok else EXIT_TASK_FAILURES


def cmd_add(args: argparse.Namespace, base: BatchConfig) -> int:
    """Add users to one or more groups."""
    return _cmd_mutate(args, base, Operation.ADD)


def cmd_del(args: argparse.Namespace, base: BatchConfig) -> int:
    """Remove users from one or more groups."""
    return _cmd_mutate(args, base, Operation.REMOVE)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--pool-id",
        help="Cognito user pool id (default: $COGNITO_USER_POOL_ID)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Overall time limit for the operation, in seconds",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        help="Attempts per request before giving up on throttling (default: 5)",
    )


def _add_mutation(parser: argparse.ArgumentParser) -> None:
    _add_common(parser)
    parser.add_argument(
        "--group", "--groups",
        dest="groups",
        action="append",
        required=True,
        help="Group name; repeat or comma-separate for several groups",
    )
    parser.add_argument(
        "--emails-file",
        required=True,
        help="File with one email per line",
    )
    parser.add_argument(
        "--index-file", "-i",
        required=True,
        help="Index written by the sync command",
    )
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        help="Maximum number of Cognito calls in flight (default: 1)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="batch-cognito",
        description="Batch operations for AWS Cognito user pools",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="Increase verbosity (-v switches to DEBUG unless LOG_LEVEL is set)",
    )
    parser.add_argument("--region", help="AWS region (default: boto3 resolution)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser(
        "sync", aliases=["build-index"], help="Export all users to a username,email index",
    )
    _add_common(sync_parser)
    sync_parser.add_argument(
        "--file", "-f",
        help="Output index file (default: stdout)",
    )
    sync_parser.set_defaults(func=cmd_sync)

    add_parser = subparsers.add_parser("add", help="Add users to one or more groups")
    _add_mutation(add_parser)
    add_parser.set_defaults(func=cmd_add)

    del_parser = subparsers.add_parser(
        "del", aliases=["remove"], help="Remove users from one or more groups",
    )
    _add_mutation(del_parser)
    del_parser.set_defaults(func=cmd_del)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        base = load_config()
    except ConfigError as exc:
        configure_logging(verbose=args.verbose)
        logger.error("Invalid configuration: %s", exc)
        return EXIT_FATAL
    configure_logging(base.log_level, args.verbose)
    logger.debug("Parsed CLI arguments: %s", vars(args))

    try:
        return args.func(args, base)
    except BatchCognitoError as exc:
        logger.error("%s", exc)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
