"""
dsproxy: policy-enforcing query proxy for shared observability backends.

Every proxied query is authenticated (bearer token against a rotating JWKS),
authorized against a hot-reloadable tuple policy, and rewritten so it can only
return data from the cluster/namespace scopes the caller may see.
"""
