# Overview: Request context decorators for API routes (actor, role and shop scoping).

from functools import wraps
from flask import request, jsonify, g


ACTOR_HEADER = "X-Actor-Id"
ROLE_HEADER = "X-Actor-Role"
SHOP_HEADER = "X-Shop-Id"


def _header_int(name: str) -> int | None:
    raw = request.headers.get(name, "").strip()
    if not raw.isdigit():
        return None
    return int(raw)


def _has_actor() -> bool:
    return hasattr(g, 'actor_id') and hasattr(g, 'shop_id')


def require_actor(f):
    """
    Require actor and tenant context from the upstream auth middleware.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.actor_id: The authenticated actor, used for audit attribution
    - g.actor_role: The actor's role in the shop (may be None)
    - g.shop_id: The shop (tenant) every query is scoped to

    Returns 401 if X-Actor-Id or X-Shop-Id is missing or not a positive integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = _header_int(ACTOR_HEADER)
        shop_id = _header_int(SHOP_HEADER)

        if not actor_id or not shop_id:
            return jsonify({
                "error": "Authentication required",
                "code": "AUTHENTICATION_REQUIRED",
                "details": {"required_headers": [ACTOR_HEADER, SHOP_HEADER]},
            }), 401

        g.actor_id = actor_id
        g.shop_id = shop_id
        g.actor_role = (request.headers.get(ROLE_HEADER) or "").strip().lower() or None

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require one of the given roles (admin always passes).

    Must be stacked under @require_actor.
    """
    allowed = {r.lower() for r in roles} | {"admin"}

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Ensure @require_actor was called first
            if not _has_actor():
                return jsonify({"error": "Authentication required", "code": "AUTHENTICATION_REQUIRED", "details": {}}), 401

            if g.actor_role not in allowed:
                return jsonify({
                    "error": "Permission denied",
                    "code": "PERMISSION_DENIED",
                    "details": {"required_roles": sorted(allowed), "role": g.actor_role},
                }), 403

            return f(*args, **kwargs)

        return decorated_function

    return decorator
