from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Tuple

import jwt  # PyJWT

from dsproxy.auth.jwks import KeySetProvider
from dsproxy.auth.models import Identity, normalize_groups
from dsproxy.errors import InvalidAudience, ServiceUnavailable, Unauthenticated
from dsproxy.k8s import TokenReviewer

logger = logging.getLogger(__name__)

ID_TOKEN_HEADER = "X-Id-Token"
AUTHORIZATION_HEADER = "Authorization"

# Credentials that must never reach the upstream.
CREDENTIAL_HEADERS = (AUTHORIZATION_HEADER, ID_TOKEN_HEADER)


def token_from_headers(headers: Mapping[str, str]) -> Tuple[str, bool]:
    """
    Return (token, is_id_token).

    `X-Id-Token` wins over `Authorization: Bearer ...`. `headers` must be a
    case-insensitive mapping.
    """
    id_token = (headers.get(ID_TOKEN_HEADER) or "").strip()
    if id_token:
        return id_token, True

    auth = headers.get(AUTHORIZATION_HEADER) or ""
    if not auth.startswith("Bearer "):
        raise Unauthenticated("Missing bearer token")
    token = auth[len("Bearer ") :].strip()
    if not token:
        raise Unauthenticated("Missing bearer token")
    return token, False


def audience_matches(aud: Any, expected: str) -> bool:
    if isinstance(aud, str):
        return aud == expected
    if isinstance(aud, (list, tuple)):
        return expected in [a for a in aud if isinstance(a, str)]
    return False


class TokenVerifier:
    """
    Validates bearer tokens and extracts the caller's identity.

    - Signature/expiry against the current JWKS (see KeySetProvider).
    - Audience must match the configured audience (InvalidAudience otherwise).
    - With `token_review=True`, plain bearer tokens (not X-Id-Token) are checked
      with the Kubernetes TokenReview API instead.
    """

    def __init__(
        self,
        keys: KeySetProvider,
        *,
        audience: str,
        token_review: bool = False,
        token_reviewer: Optional[TokenReviewer] = None,
    ) -> None:
        self.keys = keys
        self.audience = audience
        self.token_review = token_review
        self.token_reviewer = token_reviewer

    @property
    def ready(self) -> bool:
        if self.token_review and self.token_reviewer is None:
            return False
        return self.keys.loaded

    def verify(self, raw_token: str, *, is_id_token: bool = False) -> Identity:
        if not raw_token:
            raise Unauthenticated("Missing bearer token")
        if self.token_review and not is_id_token:
            return self._review(raw_token)

        claims = self.decode(raw_token)
        if not audience_matches(claims.get("aud"), self.audience):
            raise InvalidAudience()
        return self.identity_from_claims(claims)

    def decode(self, raw_token: str) -> Dict[str, Any]:
        """Verify signature and time claims; audience is checked by the caller."""
        try:
            header = jwt.get_unverified_header(raw_token)
        except jwt.InvalidTokenError as e:
            raise Unauthenticated("Malformed token") from e

        kid = header.get("kid")
        key = self.keys.get_signing_key(str(kid) if kid else None)
        try:
            claims = jwt.decode(
                raw_token,
                key=key.key,
                algorithms=[key.algorithm_name],
                options={"verify_aud": False},
            )
        except jwt.ExpiredSignatureError as e:
            raise Unauthenticated("Token expired") from e
        except jwt.InvalidTokenError as e:
            logger.info("Token rejected: %s", str(e))
            raise Unauthenticated("Invalid token") from e
        if not isinstance(claims, dict):
            raise Unauthenticated("Invalid token claims")
        return claims

    @staticmethod
    def identity_from_claims(claims: Dict[str, Any]) -> Identity:
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise Unauthenticated("Token missing subject")
        email = claims.get("email")
        return Identity(
            subject=subject.strip(),
            email=email if isinstance(email, str) and email else None,
            groups=normalize_groups(claims.get("groups")),
        )

    def _review(self, raw_token: str) -> Identity:
        if self.token_reviewer is None:
            raise ServiceUnavailable("Token review is not initialized")
        try:
            result = self.token_reviewer.review(raw_token, [self.audience] if self.audience else None)
        except Exception as e:
            logger.warning("TokenReview call failed: %s", str(e))
            raise Unauthenticated("Token review failed") from e

        if not result.get("authenticated"):
            logger.info("TokenReview rejected token: %s", result.get("error") or "not authenticated")
            raise Unauthenticated("Invalid token")
        username = str(result.get("username") or "").strip()
        if not username:
            raise Unauthenticated("Token missing subject")
        return Identity(subject=username, groups=normalize_groups(result.get("groups")))
