"""Lexical classification of free-text review comments.

The classifier reads a reviewer comment and decides whether the change-request is
approved or needs another revision. It is deliberately lexical: an explicit approval
phrase anywhere in the text wins over any issue language in the same text, so
"LGTM once you fix the security issue" is read as an approval. That precedence is
relied upon by existing reviewer workflows and is kept as-is; see DESIGN.md.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Literal


VerdictKind = Literal["approved", "needs_revision"]

# Ordered so the more specific phrase is reported when both match.
EXPLICIT_APPROVAL_PHRASES: tuple[str, ...] = (
    "no issues",
    "lgtm",
    "looks good to me",
    "looks good",
    "ready to merge",
    "ship it",
)

# `.` never crosses a newline: issue phrases are matched within a single line.
ISSUE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("there_issue", re.compile(r"\bthere\b.*\b(?:issue|problem)")),
    ("found_issue", re.compile(r"\bfound\b.*\b(?:issue|problem)")),
    ("has_issue", re.compile(r"\b(?:has|have)\b.*\b(?:issue|problem|bug)")),
    ("problem", re.compile(r"\bproblem")),
    ("bug", re.compile(r"\bbug")),
    ("must_fix", re.compile(r"\bmust fix")),
    ("should_fix", re.compile(r"\bshould fix")),
    ("need_fix", re.compile(r"\bneeds?\b.*\bfix")),
    ("concern", re.compile(r"\bconcern")),
    ("error", re.compile(r"\berror")),
)

_APPROVAL_WORD_PATTERN = re.compile(r"\bapproved?\b")
_TOKEN_PATTERN = re.compile(r"[a-z']+")
_NEGATION_LOOKBEHIND_CHARS = 64
_NEGATION_TOKENS = frozenset(
    {
        "not",
        "no",
        "never",
        "isn't",
        "wasn't",
        "aren't",
        "weren't",
        "don't",
        "doesn't",
        "didn't",
        "can't",
        "cannot",
        "won't",
        "wouldn't",
        "shouldn't",
    }
)


@dataclass(frozen=True)
class Approved:
    approval_phrase: str | None = None

    @property
    def kind(self) -> VerdictKind:
        return "approved"

    @property
    def matched_issue_patterns(self) -> tuple[str, ...]:
        return ()


@dataclass(frozen=True)
class NeedsRevision:
    matched_issue_patterns: tuple[str, ...] = ()
    approval_found: bool = False

    @property
    def kind(self) -> VerdictKind:
        return "needs_revision"


Verdict = Approved | NeedsRevision


def classify(text: str) -> Verdict:
    normalized = normalize_text(text)

    phrase = find_explicit_approval(normalized)
    if phrase is not None:
        return Approved(approval_phrase=phrase)

    matched = find_issue_patterns(normalized)
    approval_found = has_general_approval(normalized)
    if approval_found and not matched:
        return Approved(approval_phrase=None)
    return NeedsRevision(matched_issue_patterns=matched, approval_found=approval_found)


def describe_verdict(verdict: Verdict) -> str:
    if isinstance(verdict, Approved):
        if verdict.approval_phrase is not None:
            return f"approved ({verdict.approval_phrase!r})"
        return "approved"
    if verdict.matched_issue_patterns:
        return f"needs revision ({', '.join(verdict.matched_issue_patterns)})"
    return "needs revision (no approval signal)"


def normalize_text(text: str) -> str:
    return text.replace("’", "'").lower()


def find_explicit_approval(normalized: str) -> str | None:
    for phrase in EXPLICIT_APPROVAL_PHRASES:
        if phrase in normalized:
            return phrase
    return None


def find_issue_patterns(normalized: str) -> tuple[str, ...]:
    return tuple(name for name, pattern in ISSUE_PATTERNS if pattern.search(normalized))


def has_general_approval(normalized: str) -> bool:
    for match in _APPROVAL_WORD_PATTERN.finditer(normalized):
        if not _is_negated(normalized[: match.start()]):
            return True
    return False


def _is_negated(prefix: str) -> bool:
    tokens = _TOKEN_PATTERN.findall(prefix[-_NEGATION_LOOKBEHIND_CHARS:])
    if not tokens:
        return False
    return tokens[-1] in _NEGATION_TOKENS
