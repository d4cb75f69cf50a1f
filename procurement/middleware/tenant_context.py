"""
Tenant Context Middleware: resolves the caller identity for API requests.

Sources, in order:
  1. JWT claims set by jwt_auth (g.jwt_tenant_id, g.jwt_user_id, g.jwt_roles)
  2. Gateway headers: X-Tenant-ID, X-User-ID, X-User-Roles (comma separated)

On success sets g.tenant, g.tenant_id, g.user_id and g.roles.  Requests
without any identity pass through untouched; blueprints turn that into a
401 via ``current_context()``.  An unknown or deactivated tenant is
rejected here with 403; a user id that is not an active member of the
tenant with 401.

Chain order:
  jwt_auth.py  →  tenant_context.py  →  route handler
"""

import logging

from flask import g, request

from procurement.models import db
from procurement.models.auth import Tenant, User
from procurement.utils.errors import E, api_error

logger = logging.getLogger(__name__)

TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def _int_or_none(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _resolve_identity():
    """Return (tenant_id, user_id, roles) from JWT claims or gateway headers."""
    tenant_id = _int_or_none(getattr(g, "jwt_tenant_id", None))
    if tenant_id is not None:
        return tenant_id, _int_or_none(getattr(g, "jwt_user_id", None)), list(g.jwt_roles or [])

    tenant_id = _int_or_none(request.headers.get("X-Tenant-ID"))
    user_id = _int_or_none(request.headers.get("X-User-ID"))
    raw_roles = request.headers.get("X-User-Roles", "")
    roles = [r.strip() for r in raw_roles.split(",") if r.strip()]
    return tenant_id, user_id, roles


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None
        g.tenant_id = None
        g.user_id = None
        g.roles = []

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        tenant_id, user_id, roles = _resolve_identity()
        if tenant_id is None:
            return None

        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning("Request tenant_id %d not found", tenant_id,
                           extra={"tenant_id": tenant_id, "request_id": getattr(g, "request_id", None)})
            return api_error(E.UNAUTHORIZED, "Tenant not found", status=403)
        if not tenant.is_active:
            logger.warning("Request tenant_id %d is deactivated", tenant_id,
                           extra={"tenant_id": tenant_id, "request_id": getattr(g, "request_id", None)})
            return api_error(E.UNAUTHORIZED, "Tenant account is deactivated", status=403)

        if user_id is not None:
            user = db.session.get(User, user_id)
            if user is None or user.tenant_id != tenant.id or not user.is_active:
                logger.warning("User %s is not an active member of tenant %d", user_id, tenant_id,
                               extra={"tenant_id": tenant_id, "request_id": getattr(g, "request_id", None)})
                return api_error(E.UNAUTHORIZED, "User is not an active member of this tenant")

        g.tenant = tenant
        g.tenant_id = tenant.id
        g.user_id = user_id
        g.roles = roles
        return None

    logger.info("Tenant context middleware installed")
