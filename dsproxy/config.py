from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, "") or "").strip() or default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except Exception:
        return default


@dataclass(frozen=True)
class ProxyConfig:
    # Token verification
    jwks_url: str  # OIDC discovery document (yields jwks_uri)
    jwt_audience: str
    jwks_refresh_interval: int
    jwks_refresh_unknown_kid: bool
    jwks_refresh_rate_limit: int
    ca_bundle: Optional[str]
    insecure_skip_verify: bool
    token_review: bool

    # Policy
    policy_path: str
    policy_source: str  # file|kubernetes
    policy_poll_interval: int
    rules_namespace: str

    # Request pipeline
    action: str
    injection_label: str
    cluster_label: Optional[str]
    datasource_id_header: str
    datasource_type_header: str
    default_datasource_type: str

    # Upstream
    upstream_url: Optional[str]
    upstream_timeout: int

    # Listeners
    http_addr: str
    http_port: int
    https_port: int
    tls_cert: Optional[str]
    tls_key: Optional[str]
    shutdown_grace: int

    @property
    def model_file(self) -> str:
        return os.path.join(self.policy_path, "model.conf")

    @property
    def policy_file(self) -> str:
        return os.path.join(self.policy_path, "policy.csv")

    @property
    def tls_enabled(self) -> bool:
        """TLS listener runs only when both certificate files are present."""
        if not (self.tls_cert and self.tls_key):
            return False
        return os.path.isfile(self.tls_cert) and os.path.isfile(self.tls_key)

    @property
    def tls_verify(self) -> bool | str:
        """Value for the `verify=` argument of outbound `requests` calls."""
        if self.insecure_skip_verify:
            return False
        return self.ca_bundle or True


@lru_cache(maxsize=1)
def load_config() -> ProxyConfig:
    """
    Load proxy configuration from environment variables.

    Variable names mirror the CLI flags (`--jwks-url` <-> DSPROXY_JWKS_URL, ...).
    """
    source = _env_str("DSPROXY_POLICY_SOURCE", "file").lower()
    if source not in ("file", "kubernetes"):
        source = "file"

    return ProxyConfig(
        jwks_url=_env_str("DSPROXY_JWKS_URL", "https://oidc/.well-known/openid-configuration"),
        jwt_audience=_env_str("DSPROXY_JWT_AUDIENCE", "example-app"),
        jwks_refresh_interval=max(10, _env_int("DSPROXY_JWKS_REFRESH_INTERVAL", 3600)),
        jwks_refresh_unknown_kid=_env_bool("DSPROXY_JWKS_REFRESH_UNKNOWN_KID", False),
        jwks_refresh_rate_limit=max(1, _env_int("DSPROXY_JWKS_REFRESH_RATE_LIMIT", 300)),
        ca_bundle=_env_str("DSPROXY_CA_BUNDLE") or None,
        insecure_skip_verify=_env_bool("DSPROXY_INSECURE_SKIP_VERIFY", False),
        token_review=_env_bool("DSPROXY_TOKEN_REVIEW", False),
        policy_path=_env_str("DSPROXY_POLICY_PATH", "/etc/dsproxy/policy"),
        policy_source=source,
        policy_poll_interval=max(1, _env_int("DSPROXY_POLICY_POLL_INTERVAL", 30)),
        rules_namespace=_env_str("DSPROXY_RULES_NAMESPACE", "default"),
        action=_env_str("DSPROXY_ACTION", "read"),
        injection_label=_env_str("DSPROXY_INJECTION_LABEL", "namespace"),
        cluster_label=_env_str("DSPROXY_CLUSTER_LABEL") or None,
        datasource_id_header=_env_str("DSPROXY_DATASOURCE_ID_HEADER", "X-Datasource-Uid"),
        datasource_type_header=_env_str("DSPROXY_DATASOURCE_TYPE_HEADER", "X-Datasource-Type"),
        default_datasource_type=_env_str("DSPROXY_DEFAULT_DATASOURCE_TYPE", "prometheus").lower(),
        upstream_url=_env_str("DSPROXY_UPSTREAM_URL").rstrip("/") or None,
        upstream_timeout=max(1, _env_int("DSPROXY_UPSTREAM_TIMEOUT", 30)),
        http_addr=_env_str("DSPROXY_HTTP_ADDR", "127.0.0.1"),
        http_port=_env_int("DSPROXY_HTTP_PORT", 5533),
        https_port=_env_int("DSPROXY_HTTPS_PORT", 5534),
        tls_cert=_env_str("DSPROXY_TLS_CERT", "/etc/dsproxy/tls/tls.crt") or None,
        tls_key=_env_str("DSPROXY_TLS_KEY", "/etc/dsproxy/tls/tls.key") or None,
        shutdown_grace=max(0, _env_int("DSPROXY_SHUTDOWN_GRACE", 10)),
    )
