"""
Secret Pattern Detection
========================

Regular expressions for credential-shaped text in tool output. Only presence
is reported; which pattern matched is not exposed.
"""

import re
from typing import Any

SECRET_PATTERNS: tuple[re.Pattern, ...] = (
    # API keys
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
    re.compile(r"api[_-]?key[_-]?[:=][\"']?[a-zA-Z0-9]{20,}", re.IGNORECASE),
    re.compile(r"bearer\s+[a-zA-Z0-9._-]{20,}", re.IGNORECASE),
    # AWS access key id and secret-key shaped runs
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"[a-zA-Z0-9/+]{40}"),
    # Private keys
    re.compile(r"-----BEGIN (?:RSA )?PRIVATE KEY-----"),
    # Password assignments
    re.compile(r"password[_-]?[:=][\"'][^\"']{8,}", re.IGNORECASE),
    re.compile(r"passwd[_-]?[:=][\"'][^\"']{8,}", re.IGNORECASE),
    # Database URLs with credentials
    re.compile(r"(?:postgres|mysql|mongodb)://[^:]+:[^@]+@", re.IGNORECASE),
    # GitHub tokens
    re.compile(r"ghp_[a-zA-Z0-9]{36}"),
    re.compile(r"gho_[a-zA-Z0-9]{36}"),
    re.compile(r"github_pat_[a-zA-Z0-9]{22}_[a-zA-Z0-9]{59}"),
)


def contains_secret_pattern(value: Any) -> bool:
    """Return True if ``value`` is a string containing a credential-shaped token."""
    if not isinstance(value, str):
        return False
    return any(pattern.search(value) for pattern in SECRET_PATTERNS)
