from __future__ import annotations

import logging
from typing import Iterator, List, Mapping, Optional, Tuple

import requests

from dsproxy.errors import BadRequest, UpstreamError

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

_CHUNK_SIZE = 64 * 1024


def request_headers(headers: Mapping[str, str], *, drop: Tuple[str, ...] = ()) -> dict:
    """Headers to send upstream: hop-by-hop, Host and anything in `drop` removed."""
    skip = HOP_BY_HOP_HEADERS | {"host"} | {h.lower() for h in drop}
    return {k: v for k, v in headers.items() if k.lower() not in skip}


def response_headers(resp: requests.Response) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    for k, v in resp.raw.headers.items() if resp.raw is not None else resp.headers.items():
        if k.lower() in HOP_BY_HOP_HEADERS:
            continue
        out.append((k, v))
    return out


class UpstreamForwarder:
    """
    Sends the rewritten request upstream and streams the reply back untouched.

    With `base_url` every request goes there; otherwise the inbound Host header
    names the upstream (transparent mode, traffic redirected to the proxy).
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: float = 30,
        verify: bool | str = True,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/") or None
        self.timeout = timeout
        self.verify = verify
        self.session = session or requests.Session()

    def target_url(self, *, scheme: str, host: Optional[str], path: str, query: str) -> str:
        if self.base_url:
            base = self.base_url
        else:
            host = (host or "").strip()
            if not host:
                raise BadRequest("Missing Host header")
            base = f"{scheme}://{host}"
        url = base + (path if path.startswith("/") else "/" + path)
        return f"{url}?{query}" if query else url

    def send(self, method: str, url: str, headers: Mapping[str, str], body: Optional[bytes]) -> requests.Response:
        try:
            return self.session.request(
                method,
                url,
                headers=dict(headers),
                data=body or None,
                stream=True,
                allow_redirects=False,
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.exceptions.Timeout as e:
            logger.warning("Upstream timeout: %s %s: %s", method, url, str(e))
            raise UpstreamError("Upstream timeout") from e
        except requests.exceptions.RequestException as e:
            logger.warning("Upstream request failed: %s %s: %s", method, url, str(e))
            raise UpstreamError() from e

    def close(self) -> None:
        self.session.close()


def iter_body(resp: requests.Response) -> Iterator[bytes]:
    """Raw upstream bytes (no content decoding), closing the response at the end."""
    try:
        if resp.raw is not None:
            yield from resp.raw.stream(_CHUNK_SIZE, decode_content=False)
        else:
            yield resp.content
    finally:
        resp.close()
