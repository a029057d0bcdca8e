"""
Authorization model and policy data types.

The model file uses the familiar INI layout:

    [request_definition]
    r = sub, dom, obj, act

    [policy_definition]
    p = sub, dom, obj, act

    [role_definition]
    g = _, _

    [policy_effect]
    e = some(where (p.eft == allow))

    [matchers]
    m = (g(r.sub, p.sub) || r.sub == p.sub) && ...

Matching semantics are fixed (see engine.py). The file decides the column order
of `p` lines and whether `g` lines are accepted.
"""
from __future__ import annotations

import configparser
import os
import re
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

POLICY_FIELDS = frozenset({"sub", "dom", "obj", "act"})
ALLOW_OVERRIDE_EFFECT = "some(where (p.eft == allow))"

DEFAULT_MODEL_TEXT = """\
[request_definition]
r = sub, dom, obj, act

[policy_definition]
p = sub, dom, obj, act

[role_definition]
g = _, _

[policy_effect]
e = some(where (p.eft == allow))

[matchers]
m = (g(r.sub, p.sub) || r.sub == p.sub) &&
    (keyMatch2(r.dom, p.dom) || p.dom == "*") &&
    (keyMatch2(r.obj, p.obj) || p.obj == "*") &&
    r.act == p.act
"""


class PolicyTuple(NamedTuple):
    """One `p` line: (subject, domain=datasource id, object=cluster/namespace, action)."""

    subject: str
    domain: str
    object: str
    action: str


class RoleLink(NamedTuple):
    """One `g` line: `member` holds role `group`."""

    member: str
    group: str


@dataclass(frozen=True)
class PolicySet:
    policies: Tuple[PolicyTuple, ...] = ()
    roles: Tuple[RoleLink, ...] = ()


@dataclass(frozen=True)
class PolicyModel:
    request_fields: Tuple[str, ...]
    policy_fields: Tuple[str, ...]
    role_arity: int  # 0 = no role_definition, 2 = `g = _, _`
    effect: str
    matcher: str

    @property
    def has_roles(self) -> bool:
        return self.role_arity == 2

    def tuple_from_fields(self, fields: Tuple[str, ...]) -> PolicyTuple:
        """Map `p` columns (in model order) onto a PolicyTuple."""
        if len(fields) != len(self.policy_fields):
            raise ValueError(f"expected {len(self.policy_fields)} fields, got {len(fields)}")
        values = dict(zip(self.policy_fields, fields))
        return PolicyTuple(subject=values["sub"], domain=values["dom"], object=values["obj"], action=values["act"])

    def fields_from_tuple(self, t: PolicyTuple) -> Tuple[str, ...]:
        values = {"sub": t.subject, "dom": t.domain, "obj": t.object, "act": t.action}
        return tuple(values[f] for f in self.policy_fields)


def _split_fields(raw: str) -> Tuple[str, ...]:
    return tuple(x.strip() for x in (raw or "").split(",") if x.strip())


def _require(cp: configparser.ConfigParser, section: str, key: str) -> str:
    if not cp.has_section(section):
        raise ValueError(f"model is missing section [{section}]")
    value = cp.get(section, key, fallback=None)
    if value is None or not value.strip():
        raise ValueError(f"model section [{section}] is missing `{key}`")
    return value.strip()


def parse_model(text: str) -> PolicyModel:
    """Parse a model definition. Raises ValueError on anything unsupported."""
    cp = configparser.ConfigParser(delimiters=("=",), interpolation=None)
    try:
        cp.read_string(text or "")
    except configparser.Error as e:
        raise ValueError(f"invalid model file: {e}") from e

    request_fields = _split_fields(_require(cp, "request_definition", "r"))
    policy_fields = _split_fields(_require(cp, "policy_definition", "p"))
    for name, fields in (("r", request_fields), ("p", policy_fields)):
        if len(fields) != 4 or set(fields) != POLICY_FIELDS:
            raise ValueError(f"`{name}` must declare exactly: sub, dom, obj, act (got {', '.join(fields)})")

    role_arity = 0
    if cp.has_section("role_definition"):
        g = _split_fields(_require(cp, "role_definition", "g"))
        if g != ("_", "_"):
            raise ValueError("only `g = _, _` role definitions are supported")
        role_arity = 2

    effect = _require(cp, "policy_effect", "e")
    if re.sub(r"\s+", " ", effect) != ALLOW_OVERRIDE_EFFECT:
        raise ValueError(f"unsupported policy effect: {effect}")

    matcher = re.sub(r"\s+", " ", _require(cp, "matchers", "m"))

    return PolicyModel(
        request_fields=request_fields,
        policy_fields=policy_fields,
        role_arity=role_arity,
        effect=effect,
        matcher=matcher,
    )


def load_model(path: Optional[str]) -> PolicyModel:
    """Parse the model file at `path`, or the built-in model when it does not exist."""
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            return parse_model(f.read())
    return parse_model(DEFAULT_MODEL_TEXT)


DEFAULT_MODEL = parse_model(DEFAULT_MODEL_TEXT)
