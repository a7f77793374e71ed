from __future__ import annotations

from functools import wraps

from flask import abort, g
from flask_login import current_user


def require_auth_context(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            abort(401)
        if getattr(g, "auth", None) is None:
            abort(403)
        return fn(*args, **kwargs)

    return wrapper


def require_role(*roles: str):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            auth = getattr(g, "auth", None)
            if auth is None:
                abort(403)
            if not auth.has_role(*roles):
                abort(403)
            return fn(*args, **kwargs)

        return wrapper

    return decorator
