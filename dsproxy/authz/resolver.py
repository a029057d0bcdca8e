from __future__ import annotations

import logging
from typing import List, NamedTuple, Optional

from dsproxy.auth.models import Identity
from dsproxy.authz.engine import WILDCARD, PolicySnapshot
from dsproxy.errors import Forbidden, ServiceUnavailable

logger = logging.getLogger(__name__)


class Scope(NamedTuple):
    """One authorized `cluster/namespace` pair (either side may be "*" or a glob)."""

    cluster: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.cluster}/{self.namespace}"


def scope_from_object(obj: str) -> Optional[Scope]:
    obj = (obj or "").strip()
    if obj == WILDCARD:
        return Scope(WILDCARD, WILDCARD)
    cluster, sep, namespace = obj.partition("/")
    if not sep or not cluster or not namespace:
        return None
    return Scope(cluster, namespace)


def resolve_scopes(
    snapshot: Optional[PolicySnapshot],
    identity: Identity,
    datasource_id: str,
    action: str,
) -> List[Scope]:
    """
    Every cluster/namespace pair `identity` may `action` on `datasource_id`.

    Tuples are scanned in load order; the result keeps that order and holds no
    duplicates. An empty result raises Forbidden.
    """
    if snapshot is None:
        raise ServiceUnavailable("Policy is not loaded")

    principals = identity.principals()
    scopes: List[Scope] = []
    for p in snapshot.policies:
        if p.action != action:
            continue
        if p.domain != datasource_id and p.domain != WILDCARD:
            continue
        if not any(snapshot.subject_matches(principal, p.subject) for principal in principals):
            continue
        scope = scope_from_object(p.object)
        if scope is None:
            logger.warning("Ignoring policy object %r: expected cluster/namespace", p.object)
            continue
        if scope not in scopes:
            scopes.append(scope)

    if not scopes:
        logger.info(
            "authz deny: subject=%s groups=%s datasource=%s action=%s",
            identity.subject,
            ",".join(identity.groups) or "-",
            datasource_id or "-",
            action,
        )
        raise Forbidden()

    logger.info(
        "authz allow: subject=%s groups=%s datasource=%s action=%s scopes=%s",
        identity.subject,
        ",".join(identity.groups) or "-",
        datasource_id or "-",
        action,
        ",".join(str(s) for s in scopes),
    )
    return scopes
