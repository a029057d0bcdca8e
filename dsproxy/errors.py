"""
Request-terminal errors.

Each carries the HTTP status and a short public reason. The reason is what the
caller sees; internal details belong in logs only.
"""
from __future__ import annotations


class ProxyError(Exception):
    status_code = 500
    default_reason = "Internal Server Error"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class Unauthenticated(ProxyError):
    status_code = 401
    default_reason = "Unauthorized"


class InvalidAudience(Unauthenticated):
    default_reason = "Invalid audience"


class Forbidden(ProxyError):
    status_code = 403
    default_reason = "Forbidden"


class BadRequest(ProxyError):
    status_code = 400
    default_reason = "Bad Request"


class ServiceUnavailable(ProxyError):
    status_code = 503
    default_reason = "Service Unavailable"


class InternalError(ProxyError):
    status_code = 500


class UpstreamError(ProxyError):
    status_code = 502
    default_reason = "Bad Gateway"
