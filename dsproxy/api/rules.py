"""
Rule management API over GrafanaDataSourceRule objects.

Callers must present a valid token, but no policy check is applied: the
endpoints are meant to be reachable from the cluster network only.
"""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from dsproxy.auth.models import Identity
from dsproxy.auth.verifier import token_from_headers
from dsproxy.authz.rules import DataSourceRule
from dsproxy.errors import BadRequest, InternalError, ServiceUnavailable
from dsproxy.k8s import RuleClient

if TYPE_CHECKING:
    from dsproxy.runtime import ProxyRuntime

logger = logging.getLogger(__name__)


def _validation_reason(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return "Invalid rule"
    first = errors[0]
    loc = ".".join(str(p) for p in first.get("loc") or ())
    return f"Invalid rule: {loc}: {first.get('msg')}" if loc else f"Invalid rule: {first.get('msg')}"


def build_rules_router(runtime: "ProxyRuntime") -> APIRouter:
    router = APIRouter(prefix="/api/v1/rules")

    def authenticated(request: Request) -> Identity:
        token, is_id_token = token_from_headers(request.headers)
        return runtime.verifier.verify(token, is_id_token=is_id_token)

    def rule_client() -> RuleClient:
        client: Optional[RuleClient] = runtime.rule_client
        if client is None:
            raise ServiceUnavailable("Kubernetes client not initialized")
        return client

    @router.get("")
    def list_rules(
        identity: Identity = Depends(authenticated),
        client: RuleClient = Depends(rule_client),
    ) -> List[Dict[str, Any]]:
        try:
            return client.list_rules()
        except Exception as e:
            logger.exception("Failed to list rules")
            raise InternalError("Failed to list rules") from e

    @router.post("")
    async def create_rule(
        request: Request,
        identity: Identity = Depends(authenticated),
        client: RuleClient = Depends(rule_client),
    ):
        raw = await request.body()
        try:
            payload = json.loads(raw or b"null")
        except ValueError as e:
            raise BadRequest("Invalid request body") from e
        if not isinstance(payload, dict):
            raise BadRequest("Invalid request body")
        try:
            rule = DataSourceRule.model_validate(payload)
        except ValidationError as e:
            raise BadRequest(_validation_reason(e)) from e

        body = rule.to_body(runtime.config.rules_namespace)
        namespace = body["metadata"]["namespace"]
        try:
            created = await run_in_threadpool(client.create_rule, namespace, body)
        except Exception as e:
            logger.exception("Failed to create rule in namespace %s", namespace)
            raise InternalError("Failed to create rule") from e

        logger.info(
            "Rule created: %s/%s by subject=%s",
            namespace,
            body["metadata"].get("name") or body["metadata"].get("generateName"),
            identity.subject,
        )
        return JSONResponse(status_code=201, content=created if isinstance(created, dict) else body)

    @router.delete("/{name}")
    def delete_rule(
        name: str,
        namespace: Optional[str] = Query(None),
        identity: Identity = Depends(authenticated),
        client: RuleClient = Depends(rule_client),
    ):
        ns = (namespace or "").strip() or runtime.config.rules_namespace
        try:
            client.delete_rule(ns, name)
        except Exception as e:
            logger.exception("Failed to delete rule %s/%s", ns, name)
            raise InternalError("Failed to delete rule") from e
        logger.info("Rule deleted: %s/%s by subject=%s", ns, name, identity.subject)
        return Response(status_code=204)

    return router
