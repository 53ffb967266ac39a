from __future__ import annotations

import argparse
import os
from pathlib import Path
import re
import sys
from typing import Callable

from reviewloop.classifier import Approved, classify, describe_verdict
from reviewloop.config import (
    DEFAULT_CONSOLE_LOG_DIR,
    AppConfig,
    ConfigError,
    load_config_or_default,
)
from reviewloop.console import ConsoleUnavailableError, run_console_mode
from reviewloop.github_gateway import GitHubGateway
from reviewloop.loop_controller import LoopOutcome, LoopSignal, ReviewLoopController
from reviewloop.models import ChangeRequestRef
from reviewloop.observability import configure_logging


USAGE_EXIT_CODE = 2
_REPO_PATTERN = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)$")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reviewloop")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Drive one pull request through review, revision and auto-merge"
    )
    _add_loop_arguments(run_parser)

    console_parser = subparsers.add_parser(
        "console", help="Run the loop with a live terminal view of its transitions"
    )
    _add_loop_arguments(console_parser)

    classify_parser = subparsers.add_parser(
        "classify", help="Show how a review comment would be classified"
    )
    classify_parser.add_argument(
        "text",
        nargs="?",
        help="Review text to classify (read from stdin when omitted)",
    )

    return parser


def _add_loop_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("pr_number", type=int, help="Pull request number")
    parser.add_argument(
        "--repo",
        type=str,
        default=None,
        help="Repository as OWNER/NAME (defaults to $GITHUB_REPOSITORY)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config file (defaults to ./reviewloop.toml when present)",
    )
    parser.add_argument("--poll-interval", type=int, default=None, help="Seconds between polls")
    parser.add_argument(
        "--timeout", type=int, default=None, help="Seconds to wait in each waiting phase"
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Stop after this many review iterations without approval",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every poll and GitHub call to stderr",
    )
    verbosity.add_argument("--quiet", action="store_true", help="Disable runtime logging")


def main() -> None:
    args = build_parser().parse_args()

    if args.command == "classify":
        sys.exit(_cmd_classify(args.text))

    try:
        config = _load_effective_config(args)
        owner, name = _resolve_repo(args.repo)
        ref = ChangeRequestRef(owner=owner, name=name, number=args.pr_number)
        if ref.number < 1:
            raise ConfigError("PR_NUMBER must be a positive integer")
    except ConfigError as exc:
        print(f"reviewloop: {exc}", file=sys.stderr)
        sys.exit(USAGE_EXIT_CODE)

    # The live view owns the terminal, so console mode always logs to a directory instead.
    log_dir = config.runtime.log_dir
    if args.command == "console" and log_dir is None:
        log_dir = DEFAULT_CONSOLE_LOG_DIR
    configure_logging(
        _verbose_mode(args),
        log_dir=log_dir,
        to_stderr=args.command != "console",
        run_label=ref.label,
    )
    github = GitHubGateway(
        ref.owner,
        ref.name,
        retry_attempts=config.github.retry_attempts,
        retry_backoff_seconds=config.github.retry_backoff_seconds,
    )

    if args.command == "run":
        outcome = _cmd_run(config, github=github, ref=ref)
        sys.exit(outcome.exit_code)
    if args.command == "console":
        try:
            console_outcome = _cmd_console(config, github=github, ref=ref)
        except ConsoleUnavailableError as exc:
            print(f"reviewloop: {exc}", file=sys.stderr)
            sys.exit(USAGE_EXIT_CODE)
        if console_outcome is None:
            print("reviewloop: console closed before the loop finished", file=sys.stderr)
            sys.exit(1)
        sys.exit(console_outcome.exit_code)

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(config: AppConfig, *, github: GitHubGateway, ref: ChangeRequestRef) -> LoopOutcome:
    controller = ReviewLoopController(config, github=github, pr_number=ref.number)
    outcome = controller.run()
    _print_outcome(ref, outcome)
    return outcome


def _cmd_console(
    config: AppConfig, *, github: GitHubGateway, ref: ChangeRequestRef
) -> LoopOutcome | None:
    def run_loop(sink: Callable[[LoopSignal], None]) -> LoopOutcome:
        controller = ReviewLoopController(
            config, github=github, pr_number=ref.number, signal_sink=sink
        )
        return controller.run()

    outcome = run_console_mode(
        title_text=ref.label,
        run_loop=run_loop,
    )
    if outcome is not None:
        _print_outcome(ref, outcome)
    return outcome


def _cmd_classify(text: str | None) -> int:
    body = text if text is not None else sys.stdin.read()
    verdict = classify(body)
    print(describe_verdict(verdict))
    if verdict.matched_issue_patterns:
        print(f"matched issue patterns: {', '.join(verdict.matched_issue_patterns)}")
    return 0 if isinstance(verdict, Approved) else 1


def _load_effective_config(args: argparse.Namespace) -> AppConfig:
    config = load_config_or_default(args.config)
    return config.with_overrides(
        poll_interval_seconds=args.poll_interval,
        deadline_seconds=args.timeout,
        max_iterations=args.max_iterations,
    )


def _resolve_repo(raw_repo: str | None) -> tuple[str, str]:
    candidate = raw_repo if raw_repo is not None else os.environ.get("GITHUB_REPOSITORY", "")
    candidate = candidate.strip()
    if not candidate:
        raise ConfigError("--repo OWNER/NAME is required when GITHUB_REPOSITORY is not set")
    match = _REPO_PATTERN.fullmatch(candidate)
    if match is None:
        raise ConfigError(f"Invalid repository {candidate!r}; expected OWNER/NAME")
    return match.group(1), match.group(2)


def _verbose_mode(args: argparse.Namespace) -> str | None:
    if args.quiet:
        return None
    if args.verbose:
        return "high"
    return "low"


def _print_outcome(ref: ChangeRequestRef, outcome: LoopOutcome) -> None:
    print(
        f"{ref.label}: {outcome.kind} after {outcome.iteration} "
        f"iteration(s): {outcome.detail}"
    )
