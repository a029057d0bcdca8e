"""
Process wiring.

`ProxyRuntime` owns every long-lived object (keys, engine, watcher, forwarder)
and the one stop event that ends the background threads. There are no module
level singletons: tests build a runtime from fakes, `main.py` builds one from
the environment.
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

from dsproxy.auth.jwks import KeySetProvider
from dsproxy.auth.verifier import TokenVerifier
from dsproxy.authz.adapters import FileAdapter, KubernetesAdapter, PolicyAdapter
from dsproxy.authz.engine import PolicyEngine
from dsproxy.authz.watcher import FileWatchStrategy, PolicyWatcher, PollingStrategy, WatchStrategy
from dsproxy.config import ProxyConfig
from dsproxy.k8s import RuleClient, TokenReviewer, get_rule_client, get_token_reviewer
from dsproxy.pipeline import RequestPipeline
from dsproxy.proxy.upstream import UpstreamForwarder

logger = logging.getLogger(__name__)


def _try_rule_client() -> Optional[RuleClient]:
    try:
        return get_rule_client()
    except Exception as e:
        logger.info("Kubernetes API not available (rule management disabled): %s", str(e))
        return None


def _try_token_reviewer() -> Optional[TokenReviewer]:
    try:
        return get_token_reviewer()
    except Exception as e:
        logger.error("TokenReview enabled but the Kubernetes API is not available: %s", str(e))
        return None


class ProxyRuntime:
    def __init__(
        self,
        config: ProxyConfig,
        *,
        keys: KeySetProvider,
        verifier: TokenVerifier,
        engine: PolicyEngine,
        forwarder: UpstreamForwarder,
        watcher: Optional[PolicyWatcher] = None,
        rule_client: Optional[RuleClient] = None,
    ) -> None:
        self.config = config
        self.keys = keys
        self.verifier = verifier
        self.engine = engine
        self.forwarder = forwarder
        self.watcher = watcher
        self.rule_client = rule_client
        self.pipeline = RequestPipeline(
            verifier=verifier,
            engine=engine,
            forwarder=forwarder,
            action=config.action,
            injection_label=config.injection_label,
            cluster_label=config.cluster_label,
            datasource_id_header=config.datasource_id_header,
            datasource_type_header=config.datasource_type_header,
            default_datasource_type=config.default_datasource_type,
        )
        self._stop = threading.Event()
        self._started = False

    @classmethod
    def from_config(cls, cfg: ProxyConfig) -> "ProxyRuntime":
        keys = KeySetProvider(
            cfg.jwks_url,
            verify=cfg.tls_verify,
            refresh_interval=cfg.jwks_refresh_interval,
            refresh_unknown_kid=cfg.jwks_refresh_unknown_kid,
            refresh_rate_limit=cfg.jwks_refresh_rate_limit,
        )
        verifier = TokenVerifier(
            keys,
            audience=cfg.jwt_audience,
            token_review=cfg.token_review,
            token_reviewer=_try_token_reviewer() if cfg.token_review else None,
        )
        rule_client = _try_rule_client()

        adapter: PolicyAdapter
        strategy: WatchStrategy
        if cfg.policy_source == "kubernetes":
            if rule_client is None:
                raise RuntimeError("policy source 'kubernetes' requires access to the Kubernetes API")
            adapter = KubernetesAdapter(rule_client)
            strategy = PollingStrategy(cfg.policy_poll_interval)
        else:
            adapter = FileAdapter(cfg.policy_file)
            strategy = FileWatchStrategy([cfg.model_file, cfg.policy_file])

        engine = PolicyEngine(adapter, model_path=cfg.model_file)
        return cls(
            cfg,
            keys=keys,
            verifier=verifier,
            engine=engine,
            forwarder=UpstreamForwarder(base_url=cfg.upstream_url, timeout=cfg.upstream_timeout, verify=cfg.tls_verify),
            watcher=PolicyWatcher(engine, strategy),
            rule_client=rule_client,
        )

    @property
    def ready(self) -> bool:
        return self.verifier.ready and self.engine.loaded

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def start(self) -> None:
        """Initial key and policy load (failures raise), then the background threads."""
        if self._started:
            return
        self.keys.refresh()
        self.engine.reload()
        self.keys.start(self._stop)
        if self.watcher is not None:
            self.watcher.start(self._stop)
        self._started = True
        logger.info(
            "dsproxy started: policy_source=%s action=%s label=%s",
            self.config.policy_source,
            self.config.action,
            self.config.injection_label,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self.keys.join(timeout)
        if self.watcher is not None:
            self.watcher.join(timeout)
        self.forwarder.close()
        logger.info("dsproxy stopped")
