# Overview: Request decorators that establish the caller identity and gate admin routes.

from functools import wraps
from flask import request, jsonify, g

from .identity import Actor, ROLE_STAFF


def _is_identified() -> bool:
    return hasattr(g, 'actor')


def require_actor(f):
    """
    Require a caller identity from the trusted gateway headers.

    Authentication happens upstream; the gateway forwards:
    - X-Actor-Id: numeric user id (required)
    - X-Actor-Role: SUPER_ADMIN, ADMIN or STAFF (defaults to STAFF)
    - X-Actor-Branch: numeric branch id (optional)

    Sets g.actor to an Actor. Returns 401 when the id is missing or malformed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_id = (request.headers.get("X-Actor-Id") or "").strip()
        if not raw_id.isdigit():
            return jsonify({"error": "Actor identity required", "code": "UNAUTHENTICATED"}), 401

        raw_branch = (request.headers.get("X-Actor-Branch") or "").strip()
        if raw_branch and not raw_branch.isdigit():
            return jsonify({"error": "Invalid X-Actor-Branch header", "code": "UNAUTHENTICATED"}), 401

        g.actor = Actor(
            id=int(raw_id),
            role=(request.headers.get("X-Actor-Role") or ROLE_STAFF).strip().upper(),
            branch_id=int(raw_branch) if raw_branch else None,
            name=request.headers.get("X-Actor-Name"),
        )
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require one of the given roles.

    Must be applied after @require_actor.
    """
    allowed = {role.upper() for role in roles}

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_identified():
                return jsonify({"error": "Actor identity required", "code": "UNAUTHENTICATED"}), 401

            if g.actor.role not in allowed:
                return jsonify({
                    "error": "Permission denied",
                    "code": "FORBIDDEN",
                    "required_roles": sorted(allowed),
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator
