"""Environment naming from patterns.

A pattern is a template such as ``master-[YYYY]-[MM]-[DD]-[mm][ss]`` or
``GH-[branch]``. Bracketed tokens from a closed set are replaced with the
current UTC time or the sanitized branch name. Unknown bracketed tokens are
left verbatim so patterns written for newer versions keep working.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum

from .config import ConfigurationError

# Contentful environment ids: alphanumerics, dash, underscore, dot; max 64 chars
VALID_ENVIRONMENT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-_.]{0,63}$")
MAX_ENVIRONMENT_ID_LENGTH = 64

# Characters allowed in branch names but not in environment ids
_BRANCH_REPLACE_PATTERN = re.compile(r"[_./]")


class Token(str, Enum):
    """Tokens understood inside a naming pattern."""

    YYYY = "YYYY"
    YY = "YY"
    MM = "MM"
    DD = "DD"
    hh = "hh"
    mm = "mm"
    ss = "ss"
    branch = "branch"

    @property
    def placeholder(self) -> str:
        """The token as written in a pattern, e.g. ``[YYYY]``."""
        return f"[{self.value}]"


_TOKEN_PATTERN = re.compile(r"\[(" + "|".join(t.value for t in Token) + r")\]")

_TIME_RESOLVERS: dict[Token, Callable[[datetime], str]] = {
    Token.YYYY: lambda d: f"{d.year:04d}",
    Token.YY: lambda d: f"{d.year:04d}"[2:4],
    Token.MM: lambda d: f"{d.month:02d}",
    Token.DD: lambda d: f"{d.day:02d}",
    Token.hh: lambda d: f"{d.hour:02d}",
    Token.mm: lambda d: f"{d.minute:02d}",
    Token.ss: lambda d: f"{d.second:02d}",
}

# Digits each time token expands to; used to match ids produced earlier
_TIME_WIDTHS: dict[Token, int] = {
    Token.YYYY: 4,
    Token.YY: 2,
    Token.MM: 2,
    Token.DD: 2,
    Token.hh: 2,
    Token.mm: 2,
    Token.ss: 2,
}


def branch_to_environment_name(branch_name: str) -> str:
    """Convert a branch name to a valid environment name.

    Examples:
        >>> branch_to_environment_name("fix/bug_1.2")
        'fix-bug-1-2'
    """
    return _BRANCH_REPLACE_PATTERN.sub("-", branch_name)


def _sanitize_branch(branch_name: str | None) -> str:
    if not branch_name:
        return ""
    return branch_to_environment_name(branch_name)


def has_token(pattern: str, token: Token) -> bool:
    """Check whether a pattern uses a given token."""
    return token.placeholder in pattern


def resolve_pattern(
    pattern: str,
    branch_name: str | None = None,
    *,
    now: datetime | None = None,
) -> str:
    """Resolve a naming pattern to a concrete identifier.

    The UTC instant is captured once, so every time token in one call
    reflects the same moment.

    Args:
        pattern: Template containing ``[TOKEN]`` placeholders.
        branch_name: Branch substituted for ``[branch]``. When missing the
            token resolves to an empty string; callers validate upstream.
        now: Instant to resolve time tokens against (default: current UTC).

    Returns:
        The pattern with every known token replaced.

    Examples:
        >>> resolve_pattern("GH-[branch]", "fix/bug_1.2")
        'GH-fix-bug-1-2'
    """
    instant = (now or datetime.now(UTC)).astimezone(UTC)
    branch = _sanitize_branch(branch_name)

    def replace(match: re.Match[str]) -> str:
        token = Token(match.group(1))
        if token is Token.branch:
            return branch
        return _TIME_RESOLVERS[token](instant)

    return _TOKEN_PATTERN.sub(replace, pattern)


def pattern_matcher(pattern: str, branch_name: str | None = None) -> re.Pattern[str]:
    """Build a regex matching every id the pattern can produce for a branch.

    Time tokens match fixed-width digit runs, so ids created by earlier runs
    of the same branch are recognised regardless of when they were created.
    """
    parts: list[str] = []
    position = 0
    for match in _TOKEN_PATTERN.finditer(pattern):
        parts.append(re.escape(pattern[position : match.start()]))
        token = Token(match.group(1))
        if token is Token.branch:
            parts.append(re.escape(_sanitize_branch(branch_name)))
        else:
            parts.append(rf"\d{{{_TIME_WIDTHS[token]}}}")
        position = match.end()
    parts.append(re.escape(pattern[position:]))
    return re.compile("^" + "".join(parts) + "$")


def validate_environment_id(environment_id: str, pattern: str) -> str:
    """Ensure a resolved id is acceptable to Contentful.

    Raises:
        ConfigurationError: If the id is empty, too long or has invalid characters.
    """
    if len(environment_id) > MAX_ENVIRONMENT_ID_LENGTH:
        raise ConfigurationError(
            f"Environment id '{environment_id}' from pattern '{pattern}' exceeds "
            f"{MAX_ENVIRONMENT_ID_LENGTH} characters"
        )
    if not VALID_ENVIRONMENT_ID_PATTERN.match(environment_id):
        raise ConfigurationError(
            f"Pattern '{pattern}' resolved to an invalid environment id: '{environment_id}'"
        )
    return environment_id
