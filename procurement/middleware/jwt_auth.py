"""
JWT Auth Middleware: Parses JWT from Authorization header, sets g.jwt_*.

Priority order:
  1. JWT (Authorization: Bearer <token>)  →  g.jwt_user_id, g.jwt_tenant_id, g.jwt_roles
  2. Gateway headers (X-Tenant-ID / X-User-ID), handled in tenant_context

An invalid or expired token is not rejected here; the request simply
carries no JWT identity and tenant_context decides what to do.
"""

import logging

import jwt as pyjwt
from flask import g, request

from procurement.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_roles = []

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]

        try:
            payload = decode_access_token(token)
            g.jwt_user_id = payload.get("sub")
            g.jwt_tenant_id = payload.get("tenant_id")
            g.jwt_roles = payload.get("roles", [])
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired bearer token on %s", path)
        except pyjwt.InvalidTokenError:
            logger.info("Invalid bearer token on %s", path)
