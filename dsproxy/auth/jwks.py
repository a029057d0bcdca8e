from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt  # PyJWT
import requests

from dsproxy.core.snapshot import Snapshot
from dsproxy.errors import ServiceUnavailable, Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeySet:
    jwks_uri: str
    keys: Dict[str, jwt.PyJWK]  # kid -> key ("" for keys published without a kid)
    fetched_at: float


def _get_json(url: str, *, verify: bool | str) -> Dict[str, Any]:
    r = requests.get(url, timeout=10, verify=verify)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object from {url}")
    return data


def fetch_jwks_uri(discovery_url: str, *, verify: bool | str = True) -> str:
    """Resolve `jwks_uri` from an OIDC discovery document."""
    disc = _get_json(discovery_url, verify=verify)
    jwks_uri = str(disc.get("jwks_uri") or "").strip()
    if not jwks_uri:
        raise ValueError("OIDC discovery missing jwks_uri")
    return jwks_uri


def fetch_key_set(jwks_uri: str, *, verify: bool | str = True) -> KeySet:
    data = _get_json(jwks_uri, verify=verify)
    # Raises PyJWKSetError when no key in the set is usable.
    jwk_set = jwt.PyJWKSet.from_dict(data)
    keys: Dict[str, jwt.PyJWK] = {}
    for k in jwk_set.keys:
        keys[str(k.key_id or "")] = k
    return KeySet(jwks_uri=jwks_uri, keys=keys, fetched_at=time.time())


class KeySetProvider:
    """
    Current signing keys, refreshed on a fixed interval by one background thread.

    Lookups never trigger network I/O unless `refresh_unknown_kid` is enabled, and
    then at most once per `refresh_rate_limit` seconds across all requests.
    """

    def __init__(
        self,
        discovery_url: str,
        *,
        verify: bool | str = True,
        refresh_interval: int = 3600,
        refresh_unknown_kid: bool = False,
        refresh_rate_limit: int = 300,
    ) -> None:
        self.discovery_url = discovery_url
        self.verify = verify
        self.refresh_interval = refresh_interval
        self.refresh_unknown_kid = refresh_unknown_kid
        self.refresh_rate_limit = refresh_rate_limit
        self._keys: Snapshot[KeySet] = Snapshot()
        self._refresh_lock = threading.Lock()
        self._claim_lock = threading.Lock()
        self._last_on_demand = 0.0
        self._thread: Optional[threading.Thread] = None

    @property
    def loaded(self) -> bool:
        return self._keys.loaded

    def refresh(self) -> KeySet:
        """Fetch discovery + JWKS and install the new key set. Raises on failure."""
        with self._refresh_lock:
            jwks_uri = fetch_jwks_uri(self.discovery_url, verify=self.verify)
            key_set = fetch_key_set(jwks_uri, verify=self.verify)
            self._keys.swap(key_set)
        logger.info("JWKS refreshed: %d key(s) from %s", len(key_set.keys), jwks_uri)
        return key_set

    def get_signing_key(self, kid: Optional[str]) -> jwt.PyJWK:
        key_set = self._keys.load()
        if key_set is None:
            raise ServiceUnavailable("Token verification is not initialized")

        key = self._lookup(key_set, kid)
        if key is not None:
            return key

        if self.refresh_unknown_kid and self._claim_on_demand_refresh():
            try:
                key_set = self.refresh()
            except Exception as e:
                logger.warning("JWKS on-demand refresh failed: %s", str(e))
            else:
                key = self._lookup(key_set, kid)
                if key is not None:
                    return key

        raise Unauthenticated("Unknown signing key")

    def _lookup(self, key_set: KeySet, kid: Optional[str]) -> Optional[jwt.PyJWK]:
        if kid:
            return key_set.keys.get(kid)
        # No kid in the token header: only unambiguous when the set holds one key.
        if len(key_set.keys) == 1:
            return next(iter(key_set.keys.values()))
        return None

    def _claim_on_demand_refresh(self) -> bool:
        now = time.monotonic()
        with self._claim_lock:
            if self._last_on_demand and now - self._last_on_demand < self.refresh_rate_limit:
                return False
            self._last_on_demand = now
            return True

    def start(self, stop: threading.Event) -> None:
        """Start the periodic refresh thread; it exits when `stop` is set."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, args=(stop,), name="jwks-refresh", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.refresh_interval):
            try:
                self.refresh()
            except Exception as e:
                # Keep serving with the previous key set.
                logger.warning("JWKS refresh failed (keeping previous keys): %s", str(e))
        logger.info("JWKS refresh loop stopped")
