"""Deterministic normalization for identifiers the engine keys on.

  - Domains: "https://www.Example.com/blog/" → "example.com"
  - Emails: " Editor@Example.COM " → "editor@example.com"

Design: return None for values that cannot be normalized; callers decide
whether that is an error.
"""

import re
from typing import Any

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.\-]*://", re.IGNORECASE)
_DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9](?:[a-z0-9\-]{0,61}[a-z0-9])?\.)+[a-z0-9\-]{2,63}$")


def normalize_domain(raw: Any) -> str | None:
    """Reduce a URL or hostname to its bare lowercase domain."""
    if raw is None:
        return None
    s = str(raw).strip().lower()
    if not s:
        return None

    s = _SCHEME_RE.sub("", s)
    # Drop path, query, fragment, then credentials and port
    s = re.split(r"[/?#]", s, maxsplit=1)[0]
    s = s.split("@")[-1]
    s = s.split(":")[0]
    s = s.rstrip(".")
    if s.startswith("www."):
        s = s[4:]

    if not _DOMAIN_RE.match(s):
        return None
    return s


def normalize_email(raw: Any) -> str | None:
    """Trim and lowercase an email address. None if it has no @."""
    if raw is None:
        return None
    s = str(raw).strip().lower()
    if s.count("@") != 1 or s.startswith("@") or s.endswith("@"):
        return None
    return s
