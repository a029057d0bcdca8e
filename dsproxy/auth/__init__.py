"""
Bearer-token authentication for the proxy.

- Signing keys come from an OIDC discovery document and are refreshed in the background.
- Optional Kubernetes TokenReview for service-account tokens.
"""
