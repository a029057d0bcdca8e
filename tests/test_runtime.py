from __future__ import annotations

from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from conftest import DISCOVERY_URL, FakeRuleClient, FakeUpstream, rule_object, write_policy

import dsproxy.runtime as rt
from dsproxy.authz.adapters import FileAdapter, KubernetesAdapter
from dsproxy.authz.watcher import FileWatchStrategy, PollingStrategy
from dsproxy.config import load_config
from dsproxy.k8s import RULE_GROUP, RULE_PLURAL, RULE_VERSION, DefaultRuleClient, DefaultTokenReviewer


def _cfg(policy_dir, **kw):
    return replace(load_config(), jwks_url=DISCOVERY_URL, policy_path=str(policy_dir), **kw)


def test_from_config_file_source(monkeypatch, policy_dir) -> None:
    monkeypatch.setattr(rt, "get_rule_client", MagicMock(side_effect=RuntimeError("no kubeconfig")))
    runtime = rt.ProxyRuntime.from_config(_cfg(policy_dir))
    assert isinstance(runtime.engine.adapter, FileAdapter)
    assert isinstance(runtime.watcher.strategy, FileWatchStrategy)
    assert runtime.rule_client is None
    assert runtime.ready is False


def test_from_config_kubernetes_source(monkeypatch, policy_dir) -> None:
    rules = FakeRuleClient()
    monkeypatch.setattr(rt, "get_rule_client", lambda: rules)
    runtime = rt.ProxyRuntime.from_config(_cfg(policy_dir, policy_source="kubernetes"))
    assert isinstance(runtime.engine.adapter, KubernetesAdapter)
    assert isinstance(runtime.watcher.strategy, PollingStrategy)
    assert runtime.rule_client is rules


def test_kubernetes_source_requires_api(monkeypatch, policy_dir) -> None:
    monkeypatch.setattr(rt, "get_rule_client", MagicMock(side_effect=RuntimeError("no kubeconfig")))
    with pytest.raises(RuntimeError):
        rt.ProxyRuntime.from_config(_cfg(policy_dir, policy_source="kubernetes"))


def test_token_review_without_api_is_not_ready(monkeypatch, issuer, policy_dir) -> None:
    monkeypatch.setattr(rt, "get_rule_client", MagicMock(side_effect=RuntimeError("no kubeconfig")))
    monkeypatch.setattr(rt, "get_token_reviewer", MagicMock(side_effect=RuntimeError("no kubeconfig")))
    runtime = rt.ProxyRuntime.from_config(_cfg(policy_dir, token_review=True))
    runtime.keys.refresh()
    runtime.engine.reload()
    assert runtime.ready is False


def test_start_loads_keys_and_policy_then_stops(monkeypatch, issuer, policy_dir) -> None:
    monkeypatch.setattr(rt, "get_rule_client", MagicMock(side_effect=RuntimeError("no kubeconfig")))
    write_policy(policy_dir, "p, alice, ds1, cluster1/default, read\n")
    runtime = rt.ProxyRuntime.from_config(_cfg(policy_dir))
    upstream = FakeUpstream()
    runtime.forwarder.session = upstream

    runtime.start()
    try:
        assert runtime.ready is True
        assert runtime.engine.evaluate("alice", "ds1", "cluster1/default", "read") is True
        assert runtime.watcher.running is True
    finally:
        runtime.stop(timeout=5)

    assert runtime.stop_event.is_set()
    assert runtime.watcher.running is False
    assert upstream.closed is True


def test_start_fails_when_issuer_unreachable(monkeypatch, issuer, policy_dir) -> None:
    monkeypatch.setattr(rt, "get_rule_client", MagicMock(side_effect=RuntimeError("no kubeconfig")))
    issuer.fail = True
    runtime = rt.ProxyRuntime.from_config(_cfg(policy_dir))
    with pytest.raises(Exception):
        runtime.start()
    assert runtime.ready is False


def test_start_with_kubernetes_rules(monkeypatch, issuer, policy_dir) -> None:
    rules = FakeRuleClient(
        [
            rule_object(
                "team-a",
                {
                    "group": "team-a",
                    "dataSourceId": "ds1",
                    "permissions": [{"action": "read", "resource": "cluster1/team-a"}],
                },
            )
        ]
    )
    monkeypatch.setattr(rt, "get_rule_client", lambda: rules)
    runtime = rt.ProxyRuntime.from_config(_cfg(policy_dir, policy_source="kubernetes"))
    runtime.start()
    try:
        assert runtime.engine.evaluate("team-a", "ds1", "cluster1/team-a", "read") is True
    finally:
        runtime.stop(timeout=5)


def test_default_rule_client_calls_custom_objects_api() -> None:
    api = MagicMock()
    api.list_cluster_custom_object.return_value = {"items": [{"metadata": {"name": "r1"}}, "junk"]}
    client = DefaultRuleClient(api)

    assert client.list_rules() == [{"metadata": {"name": "r1"}}]
    api.list_cluster_custom_object.assert_called_once_with(RULE_GROUP, RULE_VERSION, RULE_PLURAL)

    client.create_rule("team-a", {"metadata": {"name": "r2"}})
    api.create_namespaced_custom_object.assert_called_once_with(
        RULE_GROUP, RULE_VERSION, "team-a", RULE_PLURAL, {"metadata": {"name": "r2"}}
    )

    client.delete_rule("team-a", "r2")
    api.delete_namespaced_custom_object.assert_called_once_with(RULE_GROUP, RULE_VERSION, "team-a", RULE_PLURAL, "r2")


def test_default_token_reviewer_flattens_status() -> None:
    api = MagicMock()
    status = MagicMock(authenticated=True, error=None)
    status.user = MagicMock(username="system:serviceaccount:ns:grafana", groups=["system:serviceaccounts"])
    api.create_token_review.return_value = MagicMock(status=status)

    out = DefaultTokenReviewer(api).review("tok", audiences=["example-app"])
    assert out == {
        "authenticated": True,
        "error": None,
        "username": "system:serviceaccount:ns:grafana",
        "groups": ["system:serviceaccounts"],
    }
    body = api.create_token_review.call_args.kwargs["body"]
    assert body.spec.token == "tok"
    assert body.spec.audiences == ["example-app"]
