"""Forbidden-path pattern matcher.

Three pattern shapes are supported:

* exact / prefix: ``.env`` matches ``.env`` and anything below a ``.env/``
  directory;
* single wildcard: ``*`` matches within one path segment (``*.pem``);
* double wildcard: ``**`` matches any number of whole segments, at the
  start, middle or end of the pattern (``**/secrets/**``, ``src/**/x.ts``).

Patterns without a ``/`` are matched against every segment of the path,
so ``*.key`` also catches ``certs/server.key``.

Paths and patterns are compared with forward slashes and in lower case.
"""

from __future__ import annotations

import re
from functools import lru_cache


def normalize(path: str) -> str:
    """Forward slashes, lower case, no leading ``./`` or ``/``."""
    p = path.strip().replace("\\", "/").lower()
    p = re.sub(r"/{2,}", "/", p)
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def _segment_regex(token: str) -> str:
    out = []
    for ch in token:
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
    return "".join(out).replace("[^/]*[^/]*", "[^/]*")


def _double_star_regex(pattern: str) -> str:
    tokens = pattern.split("/")
    last = len(tokens) - 1
    out = ""
    for i, tok in enumerate(tokens):
        if tok == "**":
            if i == 0 and i == last:
                out += ".*"
            elif i == 0:
                out += "(?:[^/]+/)*"
            elif i == last:
                out += "(?:/.*)?"
            else:
                out += "(?:/[^/]+)*/"
            continue
        if i > 0 and tokens[i - 1] != "**":
            out += "/"
        out += _segment_regex(tok)
    return out


@lru_cache(maxsize=512)
def _compile(pattern: str) -> tuple[str, object]:
    """Classify a normalised pattern: ('exact', str) or ('regex', compiled)."""
    if "**" in pattern:
        return "regex", re.compile(f"^{_double_star_regex(pattern)}$")
    if "*" in pattern or "?" in pattern:
        if "/" in pattern:
            return "regex", re.compile(f"^{_segment_regex(pattern)}(?:/.*)?$")
        return "segment", re.compile(f"^{_segment_regex(pattern)}$")
    return "exact", pattern.rstrip("/")


def matches(path: str, pattern: str) -> bool:
    """True if ``path`` is covered by ``pattern``."""
    p = normalize(path)
    pat = normalize(pattern)
    if not p or not pat:
        return False
    kind, rule = _compile(pat)
    if kind == "exact":
        if p == rule or p.startswith(rule + "/"):
            return True
        return "/" not in rule and rule in p.split("/")
    if kind == "segment":
        return any(rule.match(seg) for seg in p.split("/"))
    return bool(rule.match(p))


def first_match(path: str, patterns) -> str | None:
    """Return the first pattern covering ``path``, or None."""
    for pattern in patterns:
        if matches(path, pattern):
            return pattern
    return None
