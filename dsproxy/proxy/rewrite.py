"""
Per-datasource-type rewrite strategies.

A strategy knows which request parameters carry queries for its backend and
which endpoints must be given a selector when the caller sent none (otherwise
`/api/v1/labels` and friends would answer across every namespace).
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Pattern, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode

from dsproxy.errors import BadRequest, Forbidden
from dsproxy.proxy.labels import LabelMatcher, inject_logql, inject_promql, selector_for

Params = List[Tuple[str, str]]

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass(frozen=True)
class RewriteStrategy:
    name: str
    inject: Callable[[str, Sequence[LabelMatcher]], str]
    query_params: Tuple[str, ...]
    # endpoints whose parameters can all be constrained; every other path is refused
    query_endpoints: Tuple[Pattern[str], ...] = ()
    # (endpoint pattern, parameter that must carry a selector)
    selector_endpoints: Tuple[Tuple[Pattern[str], str], ...] = ()

    def enforces(self, path: str) -> bool:
        if any(p.search(path or "") for p in self.query_endpoints):
            return True
        return self.required_selector_param(path) is not None

    def required_selector_param(self, path: str) -> Optional[str]:
        for pattern, param in self.selector_endpoints:
            if pattern.search(path or ""):
                return param
        return None

    def rewrite_params(self, params: Params, matchers: Sequence[LabelMatcher]) -> Params:
        out: Params = []
        for key, value in params:
            if key in self.query_params:
                try:
                    value = self.inject(value, matchers)
                except ValueError as e:
                    raise BadRequest(f"Invalid {key} parameter: {e}") from e
            out.append((key, value))
        return out


PROMETHEUS = RewriteStrategy(
    name="prometheus",
    inject=inject_promql,
    query_params=("query", "match[]"),
    query_endpoints=(
        re.compile(r"/api/v1/query$"),
        re.compile(r"/api/v1/query_range$"),
        re.compile(r"/api/v1/query_exemplars$"),
    ),
    selector_endpoints=(
        (re.compile(r"/api/v1/series$"), "match[]"),
        (re.compile(r"/api/v1/labels$"), "match[]"),
        (re.compile(r"/api/v1/label/[^/]+/values$"), "match[]"),
        (re.compile(r"/federate$"), "match[]"),
    ),
)

LOKI = RewriteStrategy(
    name="loki",
    inject=inject_logql,
    query_params=("query", "match[]"),
    query_endpoints=(
        re.compile(r"/loki/api/v1/query$"),
        re.compile(r"/loki/api/v1/query_range$"),
        re.compile(r"/loki/api/v1/index/stats$"),
        re.compile(r"/loki/api/v1/index/volume(_range)?$"),
    ),
    selector_endpoints=(
        (re.compile(r"/loki/api/v1/series$"), "match[]"),
        (re.compile(r"/loki/api/v1/labels$"), "query"),
        (re.compile(r"/loki/api/v1/label/[^/]+/values$"), "query"),
    ),
)

STRATEGIES: Dict[str, RewriteStrategy] = {
    "prometheus": PROMETHEUS,
    "mimir": PROMETHEUS,
    "thanos": PROMETHEUS,
    "victoriametrics": PROMETHEUS,
    "cortex": PROMETHEUS,
    "loki": LOKI,
}


def strategy_for(datasource_type: str) -> RewriteStrategy:
    strategy = STRATEGIES.get((datasource_type or "").strip().lower())
    if strategy is None:
        # Unknown backends cannot be constrained, so they are not proxied at all.
        raise Forbidden("Unsupported datasource type")
    return strategy


def is_form_body(content_type: Optional[str]) -> bool:
    return (content_type or "").split(";", 1)[0].strip().lower() == FORM_CONTENT_TYPE


def rewrite_request(
    strategy: RewriteStrategy,
    path: str,
    query: Params,
    form: Optional[Params],
    matchers: Sequence[LabelMatcher],
) -> Tuple[Params, Optional[Params]]:
    """
    Rewrite URL and form parameters.

    With matchers, only endpoints the strategy can constrain are allowed
    (Forbidden otherwise); without matchers the scope is unrestricted and the
    parameters are returned as they are.

    When the endpoint needs a selector and neither the URL nor the form has one,
    a selector built from `matchers` is appended to the URL parameters.
    """
    if not matchers:
        return list(query), (list(form) if form is not None else None)
    if not strategy.enforces(path):
        raise Forbidden("Endpoint is not available for scoped access")

    new_query = strategy.rewrite_params(query, matchers)
    new_form = strategy.rewrite_params(form, matchers) if form is not None else None

    param = strategy.required_selector_param(path)
    if param:
        present = any(k == param and v.strip() for k, v in new_query + (new_form or []))
        if not present:
            new_query.append((param, selector_for(matchers)))
    return new_query, new_form


def parse_params(raw: str) -> Params:
    return parse_qsl(raw or "", keep_blank_values=True)


def encode_params(params: Params) -> str:
    return urlencode(params)
