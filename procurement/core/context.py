"""
Explicit caller identity.

Every service operation takes a ``RequestContext`` argument instead of
reading ``flask.g``; only the HTTP layer touches request globals, through
``current_context()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from procurement.core.exceptions import AuthenticationError


@dataclass(frozen=True)
class RequestContext:
    tenant_id: int
    user_id: int | None = None
    roles: tuple[str, ...] = field(default_factory=tuple)


def current_context(require_user: bool = True) -> RequestContext:
    """Build a RequestContext from the identity resolved by the middleware.

    Raises:
        AuthenticationError: tenant (or user, when required) is missing.
    """
    from flask import g

    tenant_id = getattr(g, "tenant_id", None)
    user_id = getattr(g, "user_id", None)
    if tenant_id is None:
        raise AuthenticationError("Tenant context is required")
    if require_user and user_id is None:
        raise AuthenticationError("User context is required")
    return RequestContext(
        tenant_id=tenant_id,
        user_id=user_id,
        roles=tuple(getattr(g, "roles", None) or ()),
    )
