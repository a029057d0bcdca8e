"""Kubernetes API access for rule objects and TokenReview."""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

RULE_GROUP = "grafoo.cloudmonkey.org"
RULE_VERSION = "v1alpha1"
RULE_PLURAL = "grafanadatasourcerules"
RULE_KIND = "GrafanaDataSourceRule"

_custom_objects_api = None
_authentication_api = None
_config_loaded = False
_init_lock = threading.Lock()


@runtime_checkable
class RuleClient(Protocol):
    def list_rules(self) -> List[Dict[str, Any]]: ...

    def create_rule(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]: ...

    def delete_rule(self, namespace: str, name: str) -> None: ...


@runtime_checkable
class TokenReviewer(Protocol):
    def review(self, token: str, audiences: Optional[List[str]] = None) -> Dict[str, Any]: ...


def _load_config() -> None:
    global _config_loaded
    if _config_loaded:
        return
    from kubernetes import config

    # Works both in-cluster and with a local kubeconfig.
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    _config_loaded = True


def _get_custom_objects():
    """Return a cached CustomObjectsApi client (thread-safe lazy init)."""
    global _custom_objects_api
    if _custom_objects_api is not None:
        return _custom_objects_api

    with _init_lock:
        if _custom_objects_api is not None:
            return _custom_objects_api
        from kubernetes import client

        _load_config()
        _custom_objects_api = client.CustomObjectsApi()
        return _custom_objects_api


def _get_authentication():
    """Return a cached AuthenticationV1Api client (thread-safe lazy init)."""
    global _authentication_api
    if _authentication_api is not None:
        return _authentication_api

    with _init_lock:
        if _authentication_api is not None:
            return _authentication_api
        from kubernetes import client

        _load_config()
        _authentication_api = client.AuthenticationV1Api()
        return _authentication_api


class DefaultRuleClient:
    """GrafanaDataSourceRule objects via the CustomObjectsApi."""

    def __init__(self, api: Any = None) -> None:
        self._api = api if api is not None else _get_custom_objects()

    def list_rules(self) -> List[Dict[str, Any]]:
        resp = self._api.list_cluster_custom_object(RULE_GROUP, RULE_VERSION, RULE_PLURAL)
        items = (resp or {}).get("items") or []
        return [i for i in items if isinstance(i, dict)]

    def create_rule(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._api.create_namespaced_custom_object(RULE_GROUP, RULE_VERSION, namespace, RULE_PLURAL, body)

    def delete_rule(self, namespace: str, name: str) -> None:
        self._api.delete_namespaced_custom_object(RULE_GROUP, RULE_VERSION, namespace, RULE_PLURAL, name)


class DefaultTokenReviewer:
    def __init__(self, api: Any = None) -> None:
        self._api = api if api is not None else _get_authentication()

    def review(self, token: str, audiences: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Submit a TokenReview and return a plain dict:
          {"authenticated": bool, "error": str|None, "username": str|None, "groups": [...]}
        """
        from kubernetes import client

        body = client.V1TokenReview(spec=client.V1TokenReviewSpec(token=token, audiences=audiences or None))
        result = self._api.create_token_review(body=body)
        status = getattr(result, "status", None)
        user = getattr(status, "user", None)
        return {
            "authenticated": bool(getattr(status, "authenticated", False)),
            "error": getattr(status, "error", None),
            "username": getattr(user, "username", None),
            "groups": list(getattr(user, "groups", None) or []),
        }


def get_rule_client() -> RuleClient:
    """Seam for swapping the rule source (tests inject fakes)."""
    return DefaultRuleClient()


def get_token_reviewer() -> TokenReviewer:
    return DefaultTokenReviewer()
