from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
import tomllib
from typing import cast

from reviewloop.models import MergeStrategy


DEFAULT_CONFIG_PATH = Path("reviewloop.toml")
DEFAULT_CONSOLE_LOG_DIR = Path(".reviewloop") / "logs"
DEFAULT_REVIEW_AGENT = "codex"
DEFAULT_IMPLEMENTATION_AGENT = "github-copilot[bot]"
_MERGE_STRATEGIES: tuple[MergeStrategy, ...] = ("squash", "merge", "rebase")


@dataclass(frozen=True)
class LoopConfig:
    poll_interval_seconds: int = 30
    deadline_seconds: int = 3600
    settle_seconds: int = 5
    max_iterations: int | None = None
    merge_strategy: MergeStrategy = "squash"


@dataclass(frozen=True)
class AgentsConfig:
    review_agent: str = DEFAULT_REVIEW_AGENT
    implementation_agent: str = DEFAULT_IMPLEMENTATION_AGENT
    review_request_message: str | None = None
    revision_request_message: str | None = None

    @property
    def effective_review_request_message(self) -> str:
        if self.review_request_message:
            return self.review_request_message
        return f"@{self.review_agent} review"

    @property
    def effective_revision_request_message(self) -> str:
        if self.revision_request_message:
            return self.revision_request_message
        return f"@{self.implementation_agent} address that feedback"


@dataclass(frozen=True)
class GitHubConfig:
    retry_attempts: int = 3
    retry_backoff_seconds: float = 2.0


@dataclass(frozen=True)
class RuntimeConfig:
    log_dir: Path | None = None


@dataclass(frozen=True)
class AppConfig:
    loop: LoopConfig = LoopConfig()
    agents: AgentsConfig = AgentsConfig()
    github: GitHubConfig = GitHubConfig()
    runtime: RuntimeConfig = RuntimeConfig()

    def with_overrides(
        self,
        *,
        poll_interval_seconds: int | None = None,
        deadline_seconds: int | None = None,
        max_iterations: int | None = None,
    ) -> AppConfig:
        loop = self.loop
        if poll_interval_seconds is not None:
            loop = replace(loop, poll_interval_seconds=poll_interval_seconds)
        if deadline_seconds is not None:
            loop = replace(loop, deadline_seconds=deadline_seconds)
        if max_iterations is not None:
            loop = replace(loop, max_iterations=max_iterations)
        _validate_loop(loop)
        return replace(self, loop=loop)


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    loop_data = _optional_table(data, "loop") or {}
    agents_data = _optional_table(data, "agents") or {}
    github_data = _optional_table(data, "github") or {}
    runtime_data = _optional_table(data, "runtime") or {}

    defaults = LoopConfig()
    loop = LoopConfig(
        poll_interval_seconds=_int_with_default(
            loop_data, "poll_interval_seconds", defaults.poll_interval_seconds
        ),
        deadline_seconds=_int_with_default(
            loop_data, "deadline_seconds", defaults.deadline_seconds
        ),
        settle_seconds=_int_with_default(loop_data, "settle_seconds", defaults.settle_seconds),
        max_iterations=_optional_int(loop_data, "max_iterations"),
        merge_strategy=_merge_strategy_with_default(
            loop_data, "merge_strategy", defaults.merge_strategy
        ),
    )
    _validate_loop(loop)

    agents = AgentsConfig(
        review_agent=_str_with_default(agents_data, "review_agent", DEFAULT_REVIEW_AGENT),
        implementation_agent=_str_with_default(
            agents_data, "implementation_agent", DEFAULT_IMPLEMENTATION_AGENT
        ),
        review_request_message=_optional_str(agents_data, "review_request_message"),
        revision_request_message=_optional_str(agents_data, "revision_request_message"),
    )

    github = GitHubConfig(
        retry_attempts=_int_with_default(github_data, "retry_attempts", 3),
        retry_backoff_seconds=_number_with_default(github_data, "retry_backoff_seconds", 2.0),
    )
    if github.retry_attempts < 1:
        raise ConfigError("github.retry_attempts must be >= 1")
    if github.retry_backoff_seconds < 0:
        raise ConfigError("github.retry_backoff_seconds must be >= 0")

    runtime = RuntimeConfig(log_dir=_optional_path(runtime_data, "log_dir"))

    return AppConfig(loop=loop, agents=agents, github=github, runtime=runtime)


def load_config_or_default(path: Path | None) -> AppConfig:
    if path is not None:
        return load_config(path)
    if DEFAULT_CONFIG_PATH.is_file():
        return load_config(DEFAULT_CONFIG_PATH)
    return AppConfig()


def _validate_loop(loop: LoopConfig) -> None:
    if loop.poll_interval_seconds < 1:
        raise ConfigError("loop.poll_interval_seconds must be >= 1")
    if loop.deadline_seconds < 1:
        raise ConfigError("loop.deadline_seconds must be >= 1")
    if loop.settle_seconds < 0:
        raise ConfigError("loop.settle_seconds must be >= 0")
    if loop.max_iterations is not None and loop.max_iterations < 1:
        raise ConfigError("loop.max_iterations must be >= 1 if provided")


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value.strip()


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _optional_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer if provided")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()


def _merge_strategy_with_default(
    data: dict[str, object], key: str, default: MergeStrategy
) -> MergeStrategy:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: {', '.join(_MERGE_STRATEGIES)}")
    normalized = value.strip().lower()
    if normalized not in _MERGE_STRATEGIES:
        raise ConfigError(f"{key} must be one of: {', '.join(_MERGE_STRATEGIES)}")
    return cast(MergeStrategy, normalized)
