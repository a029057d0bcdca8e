"""
Pytest config.

This repo is usually run from a checkout, so local imports like `import dsproxy`
rely on the repo root being on sys.path. We pin that here so a global `pytest`
entrypoint can always import the local package.

Shared fakes:
- an HS256 `oct` JWKS served through a patched `requests.get`
- a policy directory with `model.conf` + `policy.csv`
- an upstream `requests` session that records what it was sent
- an in-memory GrafanaDataSourceRule client
"""

from __future__ import annotations

import base64
import io
import os
import sys
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

import jwt  # noqa: E402
import pytest  # noqa: E402
import requests  # noqa: E402
import urllib3  # noqa: E402
from requests.structures import CaseInsensitiveDict  # noqa: E402

from dsproxy.auth.jwks import KeySetProvider  # noqa: E402
from dsproxy.auth.verifier import TokenVerifier  # noqa: E402
from dsproxy.authz.adapters import FileAdapter  # noqa: E402
from dsproxy.authz.engine import PolicyEngine  # noqa: E402
from dsproxy.authz.model import DEFAULT_MODEL_TEXT  # noqa: E402
from dsproxy.config import load_config  # noqa: E402
from dsproxy.proxy.upstream import UpstreamForwarder  # noqa: E402

DISCOVERY_URL = "https://issuer.test/.well-known/openid-configuration"
JWKS_URI = "https://issuer.test/keys"
AUDIENCE = "example-app"
KID = "test-key"
SECRET = b"dsproxy-test-signing-secret-0123456789"
UPSTREAM_URL = "http://upstream.test"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def oct_jwk(secret: bytes = SECRET, kid: Optional[str] = KID) -> Dict[str, Any]:
    jwk: Dict[str, Any] = {"kty": "oct", "alg": "HS256", "k": _b64url(secret)}
    if kid is not None:
        jwk["kid"] = kid
    return jwk


def mint(
    sub: Optional[str] = "alice",
    *,
    aud: Any = AUDIENCE,
    groups: Any = None,
    email: Optional[str] = None,
    expires_in: int = 300,
    kid: Optional[str] = KID,
    secret: bytes = SECRET,
    **extra: Any,
) -> str:
    now = int(time.time())
    claims: Dict[str, Any] = {"iat": now, "exp": now + expires_in, **extra}
    if sub is not None:
        claims["sub"] = sub
    if aud is not None:
        claims["aud"] = aud
    if groups is not None:
        claims["groups"] = groups
    if email is not None:
        claims["email"] = email
    headers = {"kid": kid} if kid is not None else None
    return jwt.encode(claims, secret, algorithm="HS256", headers=headers)


class _FakeHTTPResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self) -> Any:
        return self._payload


@dataclass
class FakeIssuer:
    """Discovery document + JWKS behind a patched `requests.get`."""

    keys: List[Dict[str, Any]] = field(default_factory=lambda: [oct_jwk()])
    fail: bool = False
    calls: List[str] = field(default_factory=list)

    def get(self, url: str, timeout: Any = None, verify: Any = True, **_: Any) -> _FakeHTTPResponse:
        self.calls.append(url)
        if self.fail:
            raise requests.ConnectionError("issuer unreachable")
        if url == DISCOVERY_URL:
            return _FakeHTTPResponse({"issuer": "https://issuer.test", "jwks_uri": JWKS_URI})
        if url == JWKS_URI:
            return _FakeHTTPResponse({"keys": list(self.keys)})
        return _FakeHTTPResponse({}, status_code=404)

    @property
    def jwks_fetches(self) -> int:
        return self.calls.count(JWKS_URI)


@dataclass
class UpstreamCall:
    method: str
    url: str
    headers: Dict[str, str]
    body: Optional[bytes]


class FakeUpstream:
    """Stands in for `requests.Session`; records every call."""

    def __init__(self) -> None:
        self.calls: List[UpstreamCall] = []
        self.status = 200
        self.body = b'{"status":"success","data":{"resultType":"vector","result":[]}}'
        self.headers = {"Content-Type": "application/json", "X-Upstream": "1"}
        self.error: Optional[Exception] = None
        self.closed = False

    def request(self, method: str, url: str, headers=None, data=None, **kwargs: Any) -> requests.Response:
        self.calls.append(UpstreamCall(method=method, url=url, headers=dict(headers or {}), body=data))
        if self.error is not None:
            raise self.error
        resp = requests.Response()
        resp.status_code = self.status
        resp.headers = CaseInsensitiveDict(self.headers)
        resp.raw = urllib3.HTTPResponse(
            body=io.BytesIO(self.body),
            headers=self.headers,
            status=self.status,
            preload_content=False,
        )
        resp.url = url
        return resp

    def close(self) -> None:
        self.closed = True

    @property
    def last(self) -> UpstreamCall:
        assert self.calls, "upstream was never called"
        return self.calls[-1]


class FakeRuleClient:
    """In-memory GrafanaDataSourceRule store with the RuleClient surface."""

    def __init__(self, items: Optional[List[Dict[str, Any]]] = None) -> None:
        self.items: List[Dict[str, Any]] = list(items or [])
        self.fail = False
        self.deleted: List[tuple] = []

    def list_rules(self) -> List[Dict[str, Any]]:
        if self.fail:
            raise RuntimeError("apiserver unavailable")
        return list(self.items)

    def create_rule(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail:
            raise RuntimeError("apiserver unavailable")
        obj = dict(body)
        obj["metadata"] = dict(body.get("metadata") or {}, namespace=namespace)
        self.items.append(obj)
        return obj

    def delete_rule(self, namespace: str, name: str) -> None:
        if self.fail:
            raise RuntimeError("apiserver unavailable")
        self.deleted.append((namespace, name))
        self.items = [
            i for i in self.items if not (i["metadata"].get("namespace") == namespace and i["metadata"].get("name") == name)
        ]


def rule_object(name: str, spec: Dict[str, Any], namespace: str = "default") -> Dict[str, Any]:
    return {
        "apiVersion": "grafoo.cloudmonkey.org/v1alpha1",
        "kind": "GrafanaDataSourceRule",
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
    }


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in list(os.environ):
        if name.startswith("DSPROXY_"):
            monkeypatch.delenv(name, raising=False)
    load_config.cache_clear()
    yield
    load_config.cache_clear()


@pytest.fixture
def issuer(monkeypatch: pytest.MonkeyPatch) -> FakeIssuer:
    fake = FakeIssuer()
    monkeypatch.setattr(requests, "get", fake.get)
    return fake


@pytest.fixture
def keys(issuer: FakeIssuer) -> KeySetProvider:
    provider = KeySetProvider(DISCOVERY_URL, refresh_interval=3600)
    provider.refresh()
    return provider


@pytest.fixture
def policy_dir(tmp_path: Path) -> Path:
    d = tmp_path / "policy"
    d.mkdir()
    (d / "model.conf").write_text(DEFAULT_MODEL_TEXT, encoding="utf-8")
    (d / "policy.csv").write_text("", encoding="utf-8")
    return d


def write_policy(policy_dir: Path, text: str) -> None:
    (policy_dir / "policy.csv").write_text(text, encoding="utf-8")


@dataclass
class ProxyHarness:
    client: Any
    runtime: Any
    upstream: FakeUpstream
    rules: FakeRuleClient
    policy_dir: Path

    def set_policy(self, text: str) -> None:
        write_policy(self.policy_dir, text)
        self.runtime.engine.reload()

    def get(self, path: str, *, token: Optional[str] = None, datasource: Optional[str] = "ds1", **kwargs: Any):
        headers = dict(kwargs.pop("headers", {}) or {})
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"
        if datasource is not None:
            headers.setdefault("X-Datasource-Uid", datasource)
        return self.client.get(path, headers=headers, **kwargs)


@pytest.fixture
def make_proxy(keys: KeySetProvider, policy_dir: Path):
    """Build a TestClient over a fully wired runtime; keyword args override config fields."""
    from fastapi.testclient import TestClient

    from dsproxy.api.server import create_app
    from dsproxy.runtime import ProxyRuntime

    def _make(policy: str = "", *, with_rule_client: bool = True, **overrides: Any) -> ProxyHarness:
        write_policy(policy_dir, policy)
        fields: Dict[str, Any] = {"policy_path": str(policy_dir), "upstream_url": UPSTREAM_URL}
        fields.update(overrides)
        cfg = replace(load_config(), **fields)
        engine = PolicyEngine(FileAdapter(cfg.policy_file), model_path=cfg.model_file)
        engine.reload()
        upstream = FakeUpstream()
        rules = FakeRuleClient()
        runtime = ProxyRuntime(
            cfg,
            keys=keys,
            verifier=TokenVerifier(keys, audience=cfg.jwt_audience),
            engine=engine,
            forwarder=UpstreamForwarder(base_url=cfg.upstream_url, session=upstream),
            rule_client=rules if with_rule_client else None,
        )
        return ProxyHarness(
            client=TestClient(create_app(runtime)),
            runtime=runtime,
            upstream=upstream,
            rules=rules,
            policy_dir=policy_dir,
        )

    return _make
