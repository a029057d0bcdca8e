"""
Tuple-based policy engine.

A request (subject, domain, object, action) is allowed when some loaded tuple
(s, d, o, a) satisfies:

    (s == subject or subject holds role s)
    and (d == domain or d == "*")
    and (o == "*" or o glob-matches object)
    and a == action

Role links (`g` lines) are transitive. Every load builds a complete new
snapshot and swaps it in; readers never observe a partial rule set.
"""
from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from dsproxy.authz.model import DEFAULT_MODEL, PolicyModel, PolicySet, PolicyTuple, RoleLink, load_model
from dsproxy.core.snapshot import Snapshot

logger = logging.getLogger(__name__)

WILDCARD = "*"


@lru_cache(maxsize=4096)
def _compile_key_pattern(pattern: str) -> re.Pattern:
    parts: List[str] = []
    for segment in pattern.split("/"):
        parts.append("[^/]*".join(re.escape(chunk) for chunk in segment.split("*")))
    return re.compile("^" + "/".join(parts) + "$")


def key_match(key: str, pattern: str) -> bool:
    """
    Path-style glob match of `key` against `pattern`.

    `*` matches any run of characters inside one segment, so `cluster1/*` matches
    every namespace in cluster1 and `*/*` matches every cluster/namespace pair.
    """
    if pattern == WILDCARD or pattern == key:
        return True
    if "*" not in pattern:
        return False
    return bool(_compile_key_pattern(pattern).match(key))


def _role_closure(roles: Iterable[RoleLink]) -> Dict[str, FrozenSet[str]]:
    direct: Dict[str, Set[str]] = defaultdict(set)
    for link in roles:
        direct[link.member].add(link.group)

    closure: Dict[str, FrozenSet[str]] = {}
    for member in direct:
        seen: Set[str] = set()
        stack = list(direct[member])
        while stack:
            group = stack.pop()
            if group in seen:
                continue
            seen.add(group)
            stack.extend(direct.get(group, ()))
        seen.discard(member)
        closure[member] = frozenset(seen)
    return closure


@dataclass(frozen=True)
class PolicySnapshot:
    model: PolicyModel
    policies: Tuple[PolicyTuple, ...]
    roles: Tuple[RoleLink, ...]
    _closure: Dict[str, FrozenSet[str]] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def build(cls, policy: PolicySet, model: PolicyModel = DEFAULT_MODEL) -> "PolicySnapshot":
        # dict.fromkeys dedups while keeping first-seen order.
        policies = tuple(dict.fromkeys(policy.policies))
        roles = tuple(dict.fromkeys(policy.roles)) if model.has_roles else ()
        if policy.roles and not model.has_roles:
            logger.warning("Ignoring %d role link(s): model has no role_definition", len(policy.roles))
        return cls(model=model, policies=policies, roles=roles, _closure=_role_closure(roles))

    def roles_for(self, subject: str) -> FrozenSet[str]:
        return self._closure.get(subject, frozenset())

    def has_role(self, subject: str, role: str) -> bool:
        return role in self.roles_for(subject)

    def subject_matches(self, subject: str, policy_subject: str) -> bool:
        return subject == policy_subject or self.has_role(subject, policy_subject)

    def evaluate(self, subject: str, domain: str, obj: str, action: str) -> bool:
        for p in self.policies:
            if p.action != action:
                continue
            if p.domain != domain and p.domain != WILDCARD:
                continue
            if not key_match(obj, p.object):
                continue
            if self.subject_matches(subject, p.subject):
                return True
        return False


class PolicyEngine:
    """
    Holds the loaded policy snapshot.

    `reload()` reads the model file and asks the adapter for the rule set; any
    failure leaves the previous snapshot active and is raised to the caller.
    """

    def __init__(self, adapter=None, *, model_path: Optional[str] = None) -> None:
        self.adapter = adapter
        self.model_path = model_path
        self._snapshot: Snapshot[PolicySnapshot] = Snapshot()

    @property
    def loaded(self) -> bool:
        return self._snapshot.loaded

    def snapshot(self) -> Optional[PolicySnapshot]:
        return self._snapshot.load()

    def load_rules(self, policy: PolicySet, model: Optional[PolicyModel] = None) -> PolicySnapshot:
        snap = PolicySnapshot.build(policy, model or DEFAULT_MODEL)
        self._snapshot.swap(snap)
        return snap

    def reload(self) -> PolicySnapshot:
        if self.adapter is None:
            raise RuntimeError("policy engine has no adapter")
        model = load_model(self.model_path)
        policy = self.adapter.load_policy(model)
        snap = self.load_rules(policy, model)
        logger.info("Policy loaded: %d tuple(s), %d role link(s)", len(snap.policies), len(snap.roles))
        return snap

    def evaluate(self, subject: str, domain: str, obj: str, action: str) -> bool:
        snap = self._snapshot.load()
        return snap is not None and snap.evaluate(subject, domain, obj, action)

    def has_role(self, subject: str, role: str) -> bool:
        snap = self._snapshot.load()
        return snap is not None and snap.has_role(subject, role)

    def all_tuples(self) -> List[PolicyTuple]:
        snap = self._snapshot.load()
        return list(snap.policies) if snap is not None else []
