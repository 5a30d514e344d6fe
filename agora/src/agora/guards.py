from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Dict, Sequence

from aiohttp import web

from .errors import Forbidden, Unauthorized

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def authenticate(request: web.Request) -> str | None:
    """Return the user id bound to the request's bearer session token, if any."""

    runtime = request.app["runtime"]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    session = runtime.sessions.get_by_session(session_token)
    return session.user_id if session is not None else None


def require_user(request: web.Request) -> str:
    user_id = authenticate(request)
    if user_id is None:
        raise Unauthorized("Unauthorized: Not logged in")
    return user_id


def _auth(request: web.Request) -> Dict[str, Any]:
    auth = request.get("auth")
    if auth is None:
        auth = {}
        request["auth"] = auth
    return auth


def require_permission(permission: str) -> Callable[[Handler], Handler]:
    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(request: web.Request) -> web.StreamResponse:
            user_id = require_user(request)
            context_id = request.match_info["context_id"]
            runtime = request.app["runtime"]
            result = await runtime.permissions.has_permission_with_reason(user_id, context_id, permission)
            if not result.allowed:
                raise Forbidden(f"Forbidden: {result.reason}")
            _auth(request).update(
                user_id=user_id,
                context_id=context_id,
                permission=permission,
                has_permission=True,
            )
            return await handler(request)

        return wrapper

    return decorator


def require_any_permission(permissions: Sequence[str]) -> Callable[[Handler], Handler]:
    required = list(permissions)

    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(request: web.Request) -> web.StreamResponse:
            user_id = require_user(request)
            context_id = request.match_info["context_id"]
            runtime = request.app["runtime"]
            if not await runtime.permissions.has_any_permission(user_id, context_id, required):
                raise Forbidden(f"Forbidden: Requires one of: {', '.join(required)}")
            _auth(request).update(
                user_id=user_id,
                context_id=context_id,
                permissions=required,
                has_permission=True,
            )
            return await handler(request)

        return wrapper

    return decorator


def require_membership() -> Callable[[Handler], Handler]:
    return require_permission("context.view")
