"""
Request pipeline.

Each inbound request passes through ordered stages that enrich one
`RequestContext`:

    authenticate -> authorize -> inject_labels -> forward

A stage either returns (next stage runs) or raises a ProxyError, which ends the
request. Nothing is sent upstream unless every stage before `forward` passed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set, Tuple

import requests
from requests.structures import CaseInsensitiveDict

from dsproxy.auth.models import Identity
from dsproxy.auth.verifier import CREDENTIAL_HEADERS, TokenVerifier, token_from_headers
from dsproxy.authz.engine import WILDCARD, PolicyEngine
from dsproxy.authz.resolver import Scope, resolve_scopes
from dsproxy.errors import BadRequest, Forbidden
from dsproxy.proxy.labels import LabelMatcher, matchers_for_scope
from dsproxy.proxy.rewrite import encode_params, is_form_body, parse_params, rewrite_request, strategy_for
from dsproxy.proxy.upstream import UpstreamForwarder, request_headers

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    method: str
    path: str
    query: List[Tuple[str, str]]
    headers: CaseInsensitiveDict
    body: bytes = b""
    scheme: str = "http"

    identity: Optional[Identity] = None
    datasource_id: str = ""
    datasource_type: str = ""
    scopes: List[Scope] = field(default_factory=list)
    matchers: List[LabelMatcher] = field(default_factory=list)
    body_rewritten: bool = False


Stage = Callable[[RequestContext], None]


def _form_params(ctx: RequestContext) -> Optional[List[Tuple[str, str]]]:
    if not ctx.body:
        return None
    # Backends read query parameters from multipart bodies too; only url-encoded ones can be rewritten.
    if not is_form_body(ctx.headers.get("Content-Type")):
        raise BadRequest("Unsupported request body: only application/x-www-form-urlencoded is accepted")
    try:
        return parse_params(ctx.body.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise BadRequest("Invalid form body") from e


class RequestPipeline:
    def __init__(
        self,
        *,
        verifier: TokenVerifier,
        engine: PolicyEngine,
        forwarder: UpstreamForwarder,
        action: str = "read",
        injection_label: str = "namespace",
        cluster_label: Optional[str] = None,
        datasource_id_header: str = "X-Datasource-Uid",
        datasource_type_header: str = "X-Datasource-Type",
        default_datasource_type: str = "prometheus",
    ) -> None:
        self.verifier = verifier
        self.engine = engine
        self.forwarder = forwarder
        self.action = action
        self.injection_label = injection_label
        self.cluster_label = cluster_label
        self.datasource_id_header = datasource_id_header
        self.datasource_type_header = datasource_type_header
        self.default_datasource_type = default_datasource_type
        self._unpinned_clusters: Set[str] = set()

    @property
    def stages(self) -> List[Stage]:
        return [self.authenticate, self.authorize, self.inject_labels]

    def handle(self, ctx: RequestContext) -> requests.Response:
        for stage in self.stages:
            stage(ctx)
        return self.forward(ctx)

    def authenticate(self, ctx: RequestContext) -> None:
        token, is_id_token = token_from_headers(ctx.headers)
        # Credentials never travel past this stage, whatever the outcome.
        for name in CREDENTIAL_HEADERS:
            ctx.headers.pop(name, None)
        ctx.identity = self.verifier.verify(token, is_id_token=is_id_token)

    def authorize(self, ctx: RequestContext) -> None:
        ctx.datasource_id = (ctx.headers.get(self.datasource_id_header) or "").strip()
        ctx.datasource_type = (
            (ctx.headers.get(self.datasource_type_header) or "").strip().lower() or self.default_datasource_type
        )
        if ctx.identity is None:
            raise Forbidden()
        ctx.scopes = resolve_scopes(self.engine.snapshot(), ctx.identity, ctx.datasource_id, self.action)

    def inject_labels(self, ctx: RequestContext) -> None:
        if not ctx.scopes:
            raise Forbidden()
        strategy = strategy_for(ctx.datasource_type)

        scope = ctx.scopes[0]
        if len(ctx.scopes) > 1:
            logger.warning(
                "subject=%s is authorized for %d scopes on datasource=%s; only %s is injected (dropped: %s)",
                ctx.identity.subject if ctx.identity else "-",
                len(ctx.scopes),
                ctx.datasource_id or "-",
                scope,
                ",".join(str(s) for s in ctx.scopes[1:]),
            )
        ctx.matchers = matchers_for_scope(scope, self.injection_label, self.cluster_label)
        if scope.cluster != WILDCARD and not self.cluster_label:
            if not ctx.matchers:
                # `cluster1/*` with nothing to pin the cluster on would read every cluster.
                logger.warning(
                    "subject=%s scope %s needs a cluster label; set DSPROXY_CLUSTER_LABEL to serve it",
                    ctx.identity.subject if ctx.identity else "-",
                    scope,
                )
                raise Forbidden("Scope cannot be enforced without a cluster label")
            self._warn_unpinned_cluster(scope)
        if not ctx.matchers:
            return

        form = _form_params(ctx)
        query, form = rewrite_request(strategy, ctx.path, ctx.query, form, ctx.matchers)
        ctx.query = query
        if form is not None:
            ctx.body = encode_params(form).encode("utf-8")
            ctx.body_rewritten = True

    def _warn_unpinned_cluster(self, scope: Scope) -> None:
        if scope.cluster in self._unpinned_clusters:
            return
        self._unpinned_clusters.add(scope.cluster)
        logger.warning(
            "No cluster label configured: queries for cluster %s are pinned by %s only",
            scope.cluster,
            self.injection_label,
        )

    def forward(self, ctx: RequestContext) -> requests.Response:
        drop = CREDENTIAL_HEADERS + (("Content-Length",) if ctx.body_rewritten else ())
        url = self.forwarder.target_url(
            scheme=ctx.scheme,
            host=ctx.headers.get("Host"),
            path=ctx.path,
            query=encode_params(ctx.query),
        )
        logger.debug("Forwarding %s %s", ctx.method, url)
        return self.forwarder.send(ctx.method, url, request_headers(ctx.headers, drop=drop), ctx.body)
