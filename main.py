#!/usr/bin/env python3
"""
dsproxy - policy-enforcing query proxy for shared Prometheus/Loki backends.

Authenticates every request, resolves the caller's cluster/namespace scope from
the loaded policy and pins that scope into the forwarded query.
"""

import argparse
import dataclasses
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

logger = logging.getLogger("dsproxy")


def build_parser(cfg) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Policy-enforcing proxy for multi-tenant observability backends",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Every flag defaults to its DSPROXY_* environment variable.

Examples:
  # Policy from /etc/dsproxy/policy/{model.conf,policy.csv}, fixed upstream
  python main.py --upstream-url http://prometheus:9090

  # Policy from GrafanaDataSourceRule objects, polled every 30s
  python main.py --policy-source kubernetes
        """,
    )

    # Token verification
    parser.add_argument("--jwks-url", default=cfg.jwks_url, help="OIDC discovery document URL")
    parser.add_argument("--audience", default=cfg.jwt_audience, help=f"Expected token audience (default: {cfg.jwt_audience})")
    parser.add_argument(
        "--token-review",
        action="store_true",
        default=cfg.token_review,
        help="Validate bearer tokens with the Kubernetes TokenReview API (X-Id-Token still uses JWKS)",
    )
    parser.add_argument("--ca-bundle", default=cfg.ca_bundle, help="CA bundle for discovery, JWKS and upstream TLS")
    parser.add_argument(
        "--insecure-skip-verify", action="store_true", default=cfg.insecure_skip_verify, help="Disable TLS verification"
    )

    # Policy
    parser.add_argument("--policy-path", default=cfg.policy_path, help="Directory with model.conf and policy.csv")
    parser.add_argument(
        "--policy-source",
        choices=["file", "kubernetes"],
        default=cfg.policy_source,
        help=f"Where rules come from (default: {cfg.policy_source})",
    )
    parser.add_argument("--action", default=cfg.action, help=f"Action checked for proxied requests (default: {cfg.action})")
    parser.add_argument(
        "--injection-label", default=cfg.injection_label, help=f"Label pinned in queries (default: {cfg.injection_label})"
    )

    # Upstream / listeners
    parser.add_argument("--upstream-url", default=cfg.upstream_url, help="Fixed upstream (default: inbound Host header)")
    parser.add_argument("--host", default=cfg.http_addr, help=f"Listen address (default: {cfg.http_addr})")
    parser.add_argument("--port", type=int, default=cfg.http_port, help=f"HTTP port (default: {cfg.http_port})")
    parser.add_argument("--https-port", type=int, default=cfg.https_port, help=f"HTTPS port (default: {cfg.https_port})")
    parser.add_argument("--tls-cert", default=cfg.tls_cert, help="TLS certificate file")
    parser.add_argument("--tls-key", default=cfg.tls_key, help="TLS private key file")
    return parser


def main():
    """CLI entry point."""
    from dsproxy.config import load_config

    base = load_config()
    args = build_parser(base).parse_args()

    cfg = dataclasses.replace(
        base,
        jwks_url=args.jwks_url,
        jwt_audience=args.audience,
        token_review=args.token_review,
        ca_bundle=args.ca_bundle or None,
        insecure_skip_verify=args.insecure_skip_verify,
        policy_path=args.policy_path,
        policy_source=args.policy_source,
        action=args.action,
        injection_label=args.injection_label,
        upstream_url=(args.upstream_url or "").rstrip("/") or None,
        http_addr=args.host,
        http_port=args.port,
        https_port=args.https_port,
        tls_cert=args.tls_cert or None,
        tls_key=args.tls_key or None,
    )

    from dsproxy.api.server import run
    from dsproxy.runtime import ProxyRuntime

    try:
        runtime = ProxyRuntime.from_config(cfg)
        runtime.start()
    except Exception as e:
        logger.error("Startup failed: %s", str(e))
        sys.exit(1)

    run(runtime, cfg, log_level=os.getenv("LOG_LEVEL", "info"))


if __name__ == "__main__":
    main()
