from __future__ import annotations

from dsproxy.config import load_config


def test_defaults() -> None:
    cfg = load_config()
    assert cfg.http_addr == "127.0.0.1"
    assert cfg.http_port == 5533
    assert cfg.https_port == 5534
    assert cfg.shutdown_grace == 10
    assert cfg.policy_source == "file"
    assert cfg.action == "read"
    assert cfg.injection_label == "namespace"
    assert cfg.cluster_label is None
    assert cfg.upstream_url is None
    assert cfg.model_file == "/etc/dsproxy/policy/model.conf"
    assert cfg.policy_file == "/etc/dsproxy/policy/policy.csv"
    assert cfg.tls_verify is True


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("DSPROXY_JWT_AUDIENCE", "grafana")
    monkeypatch.setenv("DSPROXY_POLICY_PATH", "/srv/policy")
    monkeypatch.setenv("DSPROXY_POLICY_SOURCE", "Kubernetes")
    monkeypatch.setenv("DSPROXY_UPSTREAM_URL", "http://prometheus:9090/")
    monkeypatch.setenv("DSPROXY_CLUSTER_LABEL", "cluster")
    monkeypatch.setenv("DSPROXY_JWKS_REFRESH_UNKNOWN_KID", "yes")
    monkeypatch.setenv("DSPROXY_HTTP_PORT", "8080")
    load_config.cache_clear()

    cfg = load_config()
    assert cfg.jwt_audience == "grafana"
    assert cfg.policy_file == "/srv/policy/policy.csv"
    assert cfg.policy_source == "kubernetes"
    assert cfg.upstream_url == "http://prometheus:9090"
    assert cfg.cluster_label == "cluster"
    assert cfg.jwks_refresh_unknown_kid is True
    assert cfg.http_port == 8080


def test_invalid_values_fall_back(monkeypatch) -> None:
    monkeypatch.setenv("DSPROXY_POLICY_SOURCE", "etcd")
    monkeypatch.setenv("DSPROXY_HTTP_PORT", "not-a-port")
    monkeypatch.setenv("DSPROXY_JWKS_REFRESH_INTERVAL", "1")
    load_config.cache_clear()

    cfg = load_config()
    assert cfg.policy_source == "file"
    assert cfg.http_port == 5533
    assert cfg.jwks_refresh_interval == 10


def test_tls_settings(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("DSPROXY_TLS_CERT", str(tmp_path / "tls.crt"))
    monkeypatch.setenv("DSPROXY_TLS_KEY", str(tmp_path / "tls.key"))
    monkeypatch.setenv("DSPROXY_CA_BUNDLE", "/etc/ssl/ca.pem")
    load_config.cache_clear()
    assert load_config().tls_enabled is False
    assert load_config().tls_verify == "/etc/ssl/ca.pem"

    (tmp_path / "tls.crt").write_text("cert")
    (tmp_path / "tls.key").write_text("key")
    assert load_config().tls_enabled is True

    monkeypatch.setenv("DSPROXY_INSECURE_SKIP_VERIFY", "true")
    load_config.cache_clear()
    assert load_config().tls_verify is False
