from __future__ import annotations

import logging
import threading
import time

from dsproxy.authz.adapters import FileAdapter, KubernetesAdapter
from dsproxy.authz.engine import PolicyEngine
from dsproxy.authz.watcher import FileWatchStrategy, PolicyWatcher, PollingStrategy
from conftest import FakeRuleClient, rule_object


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def _file_engine(policy_dir) -> PolicyEngine:
    return PolicyEngine(FileAdapter(str(policy_dir / "policy.csv")), model_path=str(policy_dir / "model.conf"))


def test_file_watch_reloads_on_policy_change(policy_dir) -> None:
    engine = _file_engine(policy_dir)
    engine.reload()
    assert engine.evaluate("alice", "ds1", "cluster1/default", "read") is False

    stop = threading.Event()
    watcher = PolicyWatcher(
        engine,
        FileWatchStrategy([str(policy_dir / "model.conf"), str(policy_dir / "policy.csv")], settle_seconds=0.05),
    )
    watcher.start(stop)
    try:
        time.sleep(0.3)
        with open(policy_dir / "policy.csv", "a", encoding="utf-8") as f:
            f.write("p, alice, ds1, cluster1/default, read\n")
        assert _wait_for(lambda: engine.evaluate("alice", "ds1", "cluster1/default", "read"))
    finally:
        stop.set()
        watcher.join(timeout=5)
    assert watcher.running is False


def test_file_watch_sees_atomic_rename(policy_dir) -> None:
    engine = _file_engine(policy_dir)
    engine.reload()
    stop = threading.Event()
    watcher = PolicyWatcher(engine, FileWatchStrategy([str(policy_dir / "policy.csv")], settle_seconds=0.05))
    watcher.start(stop)
    try:
        time.sleep(0.3)
        FileAdapter(str(policy_dir / "policy.csv")).add_policy("p", "p", ["bob", "*", "*/*", "read"])
        assert _wait_for(lambda: engine.evaluate("bob", "ds9", "c/n", "read"))
    finally:
        stop.set()
        watcher.join(timeout=5)


def test_file_watch_setup_failure_is_not_fatal(policy_dir, monkeypatch, caplog) -> None:
    engine = _file_engine(policy_dir)
    engine.reload()
    strategy = FileWatchStrategy([str(policy_dir / "policy.csv")])

    def boom(_dirty):
        raise OSError("inotify watch limit reached")

    monkeypatch.setattr(strategy, "_start_observer", boom)
    stop = threading.Event()
    watcher = PolicyWatcher(engine, strategy)
    with caplog.at_level(logging.ERROR):
        watcher.start(stop)
        assert _wait_for(lambda: "watcher setup failed" in caplog.text)
    assert watcher.running is True
    assert engine.loaded is True
    stop.set()
    watcher.join(timeout=5)
    assert watcher.running is False


def test_polling_reloads_cluster_rules() -> None:
    client = FakeRuleClient()
    engine = PolicyEngine(KubernetesAdapter(client))
    engine.reload()

    stop = threading.Event()
    watcher = PolicyWatcher(engine, PollingStrategy(0.05))
    watcher.start(stop)
    try:
        client.items.append(
            rule_object("r1", {"user": "alice", "dataSourceId": "ds1", "permissions": [{"action": "read", "resource": "c1/ns"}]})
        )
        assert _wait_for(lambda: engine.evaluate("alice", "ds1", "c1/ns", "read"))
    finally:
        stop.set()
        watcher.join(timeout=5)
    assert watcher.running is False


def test_failed_reload_keeps_serving_previous_policy(caplog) -> None:
    client = FakeRuleClient(
        [rule_object("r1", {"user": "alice", "dataSourceId": "ds1", "permissions": [{"action": "read", "resource": "c1/ns"}]})]
    )
    engine = PolicyEngine(KubernetesAdapter(client))
    engine.reload()
    client.fail = True

    stop = threading.Event()
    watcher = PolicyWatcher(engine, PollingStrategy(0.05))
    with caplog.at_level(logging.ERROR):
        watcher.start(stop)
        assert _wait_for(lambda: "Policy reload failed" in caplog.text)
    stop.set()
    watcher.join(timeout=5)
    assert engine.evaluate("alice", "ds1", "c1/ns", "read") is True


def test_start_is_idempotent_and_stop_ends_thread() -> None:
    engine = PolicyEngine(KubernetesAdapter(FakeRuleClient()))
    watcher = PolicyWatcher(engine, PollingStrategy(10))
    watcher.start()
    first = watcher._thread
    watcher.start()
    assert watcher._thread is first
    watcher.stop()
    watcher.join(timeout=5)
    assert watcher.running is False
