"""
Label injection for PromQL and LogQL.

The injector pins one or more labels in every series/stream selector of a query:

    up                                  -> up{namespace="team-a"}
    rate(http_requests_total{job="x"}[5m])
                                        -> rate(http_requests_total{job="x",namespace="team-a"}[5m])
    {app="api"} |= "error"              -> {app="api",namespace="team-a"} |= "error"

Any matcher the caller already wrote for a pinned label (`=`, `!=`, `=~`, `!~`)
is removed first, so a query can never widen its own scope.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from dsproxy.authz.engine import WILDCARD
from dsproxy.authz.resolver import Scope

_QUOTES = ("'", '"', "`")
_IDENT_START = re.compile(r"[A-Za-z_:]")
_IDENT = re.compile(r"[A-Za-z_:][A-Za-z0-9_:]*")
_NUMBER = re.compile(r"[0-9.][0-9A-Za-z_.]*")
_LABEL_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_MATCH_OP = re.compile(r"=~|!~|!=|=")

# Identifiers that are never metric names.
_KEYWORDS = frozenset(
    {
        "and",
        "or",
        "unless",
        "bool",
        "offset",
        "by",
        "without",
        "on",
        "ignoring",
        "group_left",
        "group_right",
        "sum",
        "min",
        "max",
        "avg",
        "group",
        "stddev",
        "stdvar",
        "count",
        "count_values",
        "bottomk",
        "topk",
        "quantile",
        "limitk",
        "limit_ratio",
        "atan2",
        "inf",
        "nan",
    }
)
# Followed by a parenthesised list of label names, not an expression.
_GROUPING_KEYWORDS = frozenset({"by", "without", "on", "ignoring", "group_left", "group_right"})

_REGEX_META = set("\\.+?()[]{}|^$")


@dataclass(frozen=True)
class LabelMatcher:
    name: str
    op: str  # "=" or "=~"
    value: str

    def render(self) -> str:
        return f'{self.name}{self.op}"{escape_string(self.value)}"'


def escape_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def glob_to_regex(value: str) -> str:
    """`team-*` -> `team-.*` (regex matchers are fully anchored by the query engines)."""
    out: List[str] = []
    for ch in value:
        if ch == "*":
            out.append(".*")
        elif ch in _REGEX_META:
            out.append("\\" + ch)
        else:
            out.append(ch)
    return "".join(out)


def _matcher_for(label: str, value: str) -> Optional[LabelMatcher]:
    if value == WILDCARD:
        return None
    if "*" in value:
        return LabelMatcher(label, "=~", glob_to_regex(value))
    return LabelMatcher(label, "=", value)


def matchers_for_scope(scope: Scope, label: str, cluster_label: Optional[str] = None) -> List[LabelMatcher]:
    """
    Matchers that confine a query to `scope`.

    An empty list means the scope covers everything the datasource holds (`*`).
    """
    out: List[LabelMatcher] = []
    if cluster_label:
        m = _matcher_for(cluster_label, scope.cluster)
        if m is not None:
            out.append(m)
    m = _matcher_for(label, scope.namespace)
    if m is not None:
        out.append(m)
    return out


def selector_for(matchers: Sequence[LabelMatcher]) -> str:
    return "{" + ",".join(m.render() for m in matchers) + "}"


def _skip_string(s: str, i: int) -> int:
    """Index just past the string literal starting at s[i]. Raises on an unterminated literal."""
    q = s[i]
    i += 1
    while i < len(s):
        ch = s[i]
        if ch == "\\" and q != "`":
            i += 2
            continue
        if ch == q:
            return i + 1
        i += 1
    raise ValueError("unterminated string literal")


def _skip_to_close(s: str, i: int, open_ch: str, close_ch: str) -> int:
    """Index just past the bracket that closes s[i] == open_ch (strings respected)."""
    depth = 0
    while i < len(s):
        ch = s[i]
        if ch in _QUOTES:
            i = _skip_string(s, i)
            continue
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    raise ValueError(f"unbalanced '{open_ch}'")


def _skip_ws(s: str, i: int) -> int:
    while i < len(s) and s[i].isspace():
        i += 1
    return i


def _parse_matchers(body: str) -> List[Tuple[Optional[str], str]]:
    """
    Split the inside of `{...}` into (label_name, text) pairs.

    `label_name` is None for a bare quoted metric name (`{"my.metric"}`).
    """
    items: List[Tuple[Optional[str], str]] = []
    i = _skip_ws(body, 0)
    while i < len(body):
        start = i
        if body[i] in _QUOTES:
            end = _skip_string(body, i)
            name: Optional[str] = body[i + 1 : end - 1]
            i = end
        else:
            m = _LABEL_NAME.match(body, i)
            if not m:
                raise ValueError(f"invalid label matcher near {body[i:i + 20]!r}")
            name = m.group(0)
            i = m.end()
        i = _skip_ws(body, i)
        op = _MATCH_OP.match(body, i)
        if op:
            i = _skip_ws(body, op.end())
            if i >= len(body) or body[i] not in _QUOTES:
                raise ValueError(f"label matcher for {name!r} needs a quoted value")
            i = _skip_string(body, i)
        elif body[start] in _QUOTES:
            name = None
        else:
            raise ValueError(f"label matcher for {name!r} has no operator")
        items.append((name, body[start:i].strip()))
        i = _skip_ws(body, i)
        if i < len(body):
            if body[i] != ",":
                raise ValueError(f"unexpected {body[i]!r} in label matchers")
            i = _skip_ws(body, i + 1)
    return items


def rewrite_selector(block: str, matchers: Sequence[LabelMatcher]) -> str:
    """Rewrite one `{...}` block: drop matchers on pinned labels, append ours."""
    pinned = {m.name for m in matchers}
    kept = [text for name, text in _parse_matchers(block[1:-1]) if name is None or name not in pinned]
    kept.extend(m.render() for m in matchers)
    return "{" + ",".join(kept) + "}"


def _inject(query: str, matchers: Sequence[LabelMatcher], *, bare_metrics: bool) -> str:
    out: List[str] = []
    s = query
    i = 0
    while i < len(s):
        ch = s[i]
        if ch in _QUOTES:
            end = _skip_string(s, i)
            out.append(s[i:end])
            i = end
        elif ch == "#":
            end = s.find("\n", i)
            end = len(s) if end < 0 else end
            out.append(s[i:end])
            i = end
        elif ch == "{":
            end = _skip_to_close(s, i, "{", "}")
            out.append(rewrite_selector(s[i:end], matchers))
            i = end
        elif bare_metrics and ch == "[":
            # range / subquery duration
            end = _skip_to_close(s, i, "[", "]")
            out.append(s[i:end])
            i = end
        elif bare_metrics and (ch.isdigit() or (ch == "." and i + 1 < len(s) and s[i + 1].isdigit())):
            m = _NUMBER.match(s, i)
            out.append(m.group(0))
            i = m.end()
        elif bare_metrics and _IDENT_START.match(ch):
            m = _IDENT.match(s, i)
            name = m.group(0)
            i = m.end()
            out.append(name)
            nxt = _skip_ws(s, i)
            following = s[nxt] if nxt < len(s) else ""
            lowered = name.lower()
            if lowered in _GROUPING_KEYWORDS and following == "(":
                end = _skip_to_close(s, nxt, "(", ")")
                out.append(s[i:end])
                i = end
            elif lowered in _KEYWORDS or following in ("(", "{"):
                continue
            else:
                out.append(selector_for(matchers))
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def inject_promql(query: str, matchers: Sequence[LabelMatcher]) -> str:
    """Pin `matchers` in every selector of a PromQL expression. Raises ValueError on unparsable input."""
    if not matchers:
        return query
    return _inject(query, matchers, bare_metrics=True)


def inject_logql(query: str, matchers: Sequence[LabelMatcher]) -> str:
    """Pin `matchers` in every stream selector of a LogQL expression."""
    if not matchers:
        return query
    return _inject(query, matchers, bare_metrics=False)
