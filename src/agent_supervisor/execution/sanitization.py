"""Secret redaction for prompt, error and partial-result previews.

Previews end up in the audit trail and the driver's error log, both of which
outlive the task and may be shared. Prompts routinely carry credentials for
the tools the agent is allowed to use.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_PREVIEW_CHARS = 2_000
TRUNCATION_MARKER = "..."


@dataclass(slots=True, frozen=True)
class _RedactionRule:
    name: str
    pattern: re.Pattern[str]
    replacement: str | Callable[[re.Match[str]], str]


def _keep_query_name(match: re.Match[str]) -> str:
    return f"{match.group('name')}=[redacted]"


_RULES: tuple[_RedactionRule, ...] = (
    _RedactionRule(
        "authorization_header",
        re.compile(r"(?i)\b(?P<scheme>bearer|basic)\s+[a-z0-9._~+/=\-]{8,}"),
        r"\g<scheme> [redacted-token]",
    ),
    _RedactionRule(
        "provider_key",
        re.compile(r"\b(?:sk-(?:ant-)?|ghp_|gho_|xox[abp]-)[A-Za-z0-9_\-]{8,}"),
        "[redacted-token]",
    ),
    _RedactionRule(
        "aws_access_key",
        re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
        "[redacted-token]",
    ),
    _RedactionRule(
        "env_assignment",
        re.compile(
            r"(?i)(?<![?&])\b[a-z0-9_]*(?:api_key|apikey|secret|token|password)\b"
            r"\s*[:=]\s*['\"]?[^'\"\s]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    _RedactionRule(
        "url_credential",
        re.compile(r"(?i)(?<=[?&])(?P<name>token|key|signature|auth|access_token)=[^&\s]+"),
        _keep_query_name,
    ),
)


def redact_secrets(text: str) -> str:
    """Replace credential-looking substrings with placeholders."""

    for rule in _RULES:
        text = rule.pattern.sub(rule.replacement, text)
    return text


def sanitize_preview(text: str, *, max_chars: int = DEFAULT_PREVIEW_CHARS) -> str:
    """Redacted, whitespace-trimmed preview clamped to ``max_chars``."""

    compact = text.strip()
    if not compact:
        return ""
    redacted = redact_secrets(compact)
    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars] + TRUNCATION_MARKER
