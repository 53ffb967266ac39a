from __future__ import annotations

from pathlib import Path

import pytest

from reviewloop import config as config_module
from reviewloop.config import (
    AgentsConfig,
    AppConfig,
    ConfigError,
    load_config,
    load_config_or_default,
)


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "reviewloop.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_full_config(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
[loop]
poll_interval_seconds = 10
deadline_seconds = 600
settle_seconds = 0
max_iterations = 4
merge_strategy = "Rebase"

[agents]
review_agent = "codex"
implementation_agent = "github-copilot[bot]"
review_request_message = "@codex review please"

[github]
retry_attempts = 5
retry_backoff_seconds = 0.5

[runtime]
log_dir = "~/reviewloop-logs"
""",
    )

    cfg = load_config(path)

    assert cfg.loop.poll_interval_seconds == 10
    assert cfg.loop.deadline_seconds == 600
    assert cfg.loop.settle_seconds == 0
    assert cfg.loop.max_iterations == 4
    assert cfg.loop.merge_strategy == "rebase"
    assert cfg.agents.effective_review_request_message == "@codex review please"
    assert (
        cfg.agents.effective_revision_request_message
        == "@github-copilot[bot] address that feedback"
    )
    assert cfg.github.retry_attempts == 5
    assert cfg.github.retry_backoff_seconds == 0.5
    assert cfg.runtime.log_dir == Path("~/reviewloop-logs").expanduser()


def test_empty_file_uses_defaults(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, ""))
    assert cfg == AppConfig()
    assert cfg.loop.poll_interval_seconds == 30
    assert cfg.loop.deadline_seconds == 3600
    assert cfg.loop.settle_seconds == 5
    assert cfg.loop.max_iterations is None
    assert cfg.agents.effective_review_request_message == "@codex review"


def test_default_messages_follow_agent_names() -> None:
    agents = AgentsConfig(review_agent="claude", implementation_agent="devin")
    assert agents.effective_review_request_message == "@claude review"
    assert agents.effective_revision_request_message == "@devin address that feedback"


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("[loop]\npoll_interval_seconds = 0\n", "poll_interval_seconds must be >= 1"),
        ("[loop]\ndeadline_seconds = 0\n", "deadline_seconds must be >= 1"),
        ("[loop]\nsettle_seconds = -1\n", "settle_seconds must be >= 0"),
        ("[loop]\nmax_iterations = 0\n", "max_iterations must be >= 1"),
        ("[loop]\npoll_interval_seconds = true\n", "must be an integer"),
        ("[loop]\nmax_iterations = 1.5\n", "must be an integer if provided"),
        ("[loop]\nmerge_strategy = \"octopus\"\n", "merge_strategy must be one of"),
        ("[loop]\nmerge_strategy = 3\n", "merge_strategy must be one of"),
        ("loop = 3\n", r"\[loop\] must be a TOML table"),
        ("[agents]\nreview_agent = \"  \"\n", "review_agent must be a non-empty string"),
        ("[agents]\nreview_request_message = 4\n", "review_request_message must be"),
        ("[github]\nretry_attempts = 0\n", "retry_attempts must be >= 1"),
        ("[github]\nretry_backoff_seconds = -1\n", "retry_backoff_seconds must be >= 0"),
        ("[github]\nretry_backoff_seconds = \"2\"\n", "must be a number"),
        ("[runtime]\nlog_dir = \"\"\n", "log_dir must be a non-empty string"),
    ],
)
def test_invalid_values_raise_config_error(tmp_path: Path, text: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path, text))


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        load_config(tmp_path / "missing.toml")
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write(tmp_path, "[loop\n"))


def test_load_config_or_default(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert load_config_or_default(None) == AppConfig()

    (tmp_path / "reviewloop.toml").write_text("[loop]\npoll_interval_seconds = 7\n")
    assert load_config_or_default(None).loop.poll_interval_seconds == 7

    other = tmp_path / "other.toml"
    other.write_text("[loop]\npoll_interval_seconds = 9\n")
    assert load_config_or_default(other).loop.poll_interval_seconds == 9
    assert config_module.DEFAULT_CONFIG_PATH == Path("reviewloop.toml")


def test_with_overrides_applies_and_validates() -> None:
    cfg = AppConfig().with_overrides(
        poll_interval_seconds=5, deadline_seconds=60, max_iterations=3
    )
    assert cfg.loop.poll_interval_seconds == 5
    assert cfg.loop.deadline_seconds == 60
    assert cfg.loop.max_iterations == 3
    assert cfg.loop.settle_seconds == 5

    assert AppConfig().with_overrides() == AppConfig()
    with pytest.raises(ConfigError, match="poll_interval_seconds"):
        AppConfig().with_overrides(poll_interval_seconds=0)
