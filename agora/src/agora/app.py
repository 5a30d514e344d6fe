from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Type, TypeVar

from aiohttp import web

from .activities import ActivityService, SQLiteActivityStore
from .addressing import AddressResolver
from .broadcast import GLOBAL_CHANNEL, LiveBroadcaster, LiveConnection, context_channel, encode_event, home_channel
from .builtin_plugins import initialize_plugins, record_check_in
from .config import AgoraConfig
from .contexts import ContextKind, ContextService, JoinPolicy, SQLiteContextStore, Visibility
from .errors import AgoraError, BadRequest, NotFound, Unauthorized
from .follows import SQLiteFollowStore
from .guards import authenticate, require_membership, require_permission, require_user
from .inbox import SQLiteInboxStore
from .memberships import MembershipService, MembershipStatus, SQLiteMembershipStore
from .permissions import PermissionResolver, PermissionService
from .plugins import PluginRegistry
from .roles import parse_role
from .sessions import SQLiteSessionStore
from .sqlite_backend import SQLiteBackend
from .timeline import TimelineQueries

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


class Runtime:
    """Wires the stores and services that handlers reach through ``app["runtime"]``."""

    def __init__(self, config: AgoraConfig, *, registry: PluginRegistry | None = None) -> None:
        self.config = config
        self.backend = SQLiteBackend(config.db_path)
        self.sessions = SQLiteSessionStore(self.backend, ttl_ms=config.session_ttl_ms)

        self.context_store = SQLiteContextStore(self.backend)
        self.membership_store = SQLiteMembershipStore(self.backend)
        self.follows = SQLiteFollowStore(self.backend)
        self.activity_store = SQLiteActivityStore(self.backend)
        self.inbox = SQLiteInboxStore(self.backend)

        self.registry = registry or PluginRegistry()
        if registry is None:
            initialize_plugins(self.registry, self.membership_store)

        self.permissions = PermissionService(PermissionResolver(self.registry), self.membership_store, self.context_store)
        self.resolver = AddressResolver(self.registry, self.membership_store, self.context_store, self.follows)
        self.broadcaster = LiveBroadcaster(
            max_connections_per_user=config.max_connections_per_user,
            sweep_interval_s=config.sweep_interval_s,
            sweep_enabled=config.production,
        )

        self.contexts = ContextService(self.context_store, self.membership_store, self.registry, self.permissions)
        self.memberships = MembershipService(self.membership_store, self.context_store, self.registry)
        self.activities = ActivityService(
            self.activity_store,
            resolver=self.resolver,
            permissions=self.permissions,
            contexts=self.context_store,
            follows=self.follows,
            inbox=self.inbox,
            broadcaster=self.broadcaster,
            registry=self.registry,
        )
        self.timeline = TimelineQueries(
            self.activity_store,
            resolver=self.resolver,
            follows=self.follows,
            contexts=self.context_store,
            memberships=self.membership_store,
            config=config,
        )


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except AgoraError as exc:
        if exc.status >= 500:
            logger.exception("request failed: %s %s", request.method, request.path)
        return web.json_response(exc.to_api_dict(), status=exc.status)


def _runtime(request: web.Request) -> Runtime:
    return request.app["runtime"]


async def _read_json(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except Exception:
        raise BadRequest("malformed json") from None
    if not isinstance(body, dict):
        raise BadRequest("request body must be an object")
    return body


def _parse_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        raise BadRequest(f"invalid {field}: {value}") from None


def _optional_str(body: Dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is not None and not isinstance(value, str):
        raise BadRequest(f"{key} must be a string")
    return value


def _str_list(body: Dict[str, Any], key: str) -> List[str]:
    value = body.get(key, [])
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise BadRequest(f"{key} must be a list of strings")
    return value


def _query_int(request: web.Request, key: str) -> int | None:
    raw = request.query.get(key)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise BadRequest(f"{key} must be an integer") from None


def _query_bool(request: web.Request, key: str) -> bool:
    return request.query.get(key, "").lower() in {"1", "true", "yes"}


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_session_start(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    auth_token = body.get("auth_token")
    if not isinstance(auth_token, str) or not auth_token.startswith("Bearer "):
        raise BadRequest("auth_token required")
    user_id = auth_token[len("Bearer ") :].strip()
    if not user_id:
        raise BadRequest("auth_token required")
    session = runtime.sessions.create(user_id)
    return web.json_response(
        {"session_token": session.session_token, "user_id": user_id, "expires_at": session.expires_at_ms}
    )


# -- contexts ----------------------------------------------------------------


async def handle_context_create(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    body = await _read_json(request)

    name = body.get("name")
    if not isinstance(name, str) or not name.strip():
        raise BadRequest("name required")
    kind = _parse_enum(ContextKind, body.get("kind", "GROUP"), "kind")
    plugin_id = _optional_str(body, "plugin_id")
    if plugin_id is None:
        plugin = runtime.registry.default_for_context_type(kind.value)
        if plugin is None:
            raise BadRequest(f'No plugin available for context type "{kind.value}"')
        plugin_id = plugin.id
    plugin_data = body.get("plugin_data")
    if plugin_data is not None and not isinstance(plugin_data, dict):
        raise BadRequest("plugin_data must be an object")

    context, membership = await runtime.contexts.create(
        owner_id=user_id,
        kind=kind,
        name=name.strip(),
        plugin_id=plugin_id,
        plugin_data=plugin_data,
        description=_optional_str(body, "description") or "",
        visibility=_parse_enum(Visibility, body.get("visibility", "PUBLIC"), "visibility"),
        join_policy=_parse_enum(JoinPolicy, body.get("join_policy", "OPEN"), "join_policy"),
    )
    return web.json_response(
        {"context": context.to_api_dict(), "membership": membership.to_api_dict()},
        status=201,
    )


async def handle_context_get(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = authenticate(request)
    context_id = request.match_info["context_id"]
    context = await runtime.contexts.get(context_id)
    if not await runtime.contexts.can_access(context_id, user_id):
        raise NotFound("Context not found")
    membership = runtime.membership_store.get(context_id, user_id) if user_id else None
    return web.json_response(
        {
            "context": context.to_api_dict(),
            "membership": membership.to_api_dict() if membership is not None else None,
        }
    )


async def handle_context_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    body = await _read_json(request)
    fields: Dict[str, Any] = {
        "name": _optional_str(body, "name"),
        "description": _optional_str(body, "description"),
    }
    if body.get("visibility") is not None:
        fields["visibility"] = _parse_enum(Visibility, body["visibility"], "visibility")
    if body.get("join_policy") is not None:
        fields["join_policy"] = _parse_enum(JoinPolicy, body["join_policy"], "join_policy")
    context = await runtime.contexts.update(request.match_info["context_id"], user_id, **fields)
    return web.json_response({"context": context.to_api_dict()})


async def handle_context_archive(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    await runtime.contexts.archive(request.match_info["context_id"], user_id)
    return web.json_response({"status": "ok"})


async def handle_context_join(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    result = await runtime.contexts.join(request.match_info["context_id"], user_id)
    return web.json_response({"membership": result.membership.to_api_dict(), "pending": result.pending})


async def handle_context_leave(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    await runtime.contexts.leave(request.match_info["context_id"], user_id)
    return web.json_response({"status": "ok"})


async def handle_context_plugin_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    body = await _read_json(request)
    context = await runtime.contexts.update_plugin_data(
        request.match_info["context_id"], request.match_info["plugin_id"], body, user_id
    )
    return web.json_response({"context": context.to_api_dict()})


async def handle_context_permissions(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    permissions = await runtime.permissions.get_permissions_from_db(user_id, request.match_info["context_id"])
    return web.json_response({"permissions": permissions})


# -- members -----------------------------------------------------------------


@require_membership()
async def handle_member_list(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    status = request.query.get("status")
    role = request.query.get("role")
    page = await runtime.memberships.list(
        request.match_info["context_id"],
        status=_parse_enum(MembershipStatus, status, "status") if status else None,
        role=parse_role(role) if role else None,
        cursor=request.query.get("cursor") or None,
        limit=runtime.config.clamp_page_size(_query_int(request, "limit")),
    )
    return web.json_response(page.to_api_dict())


@require_membership()
async def handle_member_counts(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    counts = await runtime.memberships.count_by_status(request.match_info["context_id"])
    return web.json_response({"counts": counts})


async def handle_member_role(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    actor_id = require_user(request)
    body = await _read_json(request)
    if "role" not in body:
        raise BadRequest("role required")
    membership = await runtime.memberships.update_role(
        request.match_info["context_id"], request.match_info["user_id"], parse_role(body["role"]), actor_id
    )
    return web.json_response({"membership": membership.to_api_dict()})


async def handle_member_approve(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    actor_id = require_user(request)
    membership = await runtime.memberships.approve(
        request.match_info["context_id"], request.match_info["user_id"], actor_id
    )
    return web.json_response({"membership": membership.to_api_dict()})


async def handle_member_reject(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    actor_id = require_user(request)
    await runtime.memberships.reject(request.match_info["context_id"], request.match_info["user_id"], actor_id)
    return web.json_response({"status": "ok"})


async def handle_member_ban(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    actor_id = require_user(request)
    membership = await runtime.memberships.ban(request.match_info["context_id"], request.match_info["user_id"], actor_id)
    return web.json_response({"membership": membership.to_api_dict()})


async def handle_member_unban(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    actor_id = require_user(request)
    membership = await runtime.memberships.unban(
        request.match_info["context_id"], request.match_info["user_id"], actor_id
    )
    return web.json_response({"membership": membership.to_api_dict()})


async def handle_member_plugin_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    actor_id = require_user(request)
    body = await _read_json(request)
    membership = await runtime.memberships.update_plugin_data(
        request.match_info["context_id"],
        request.match_info["user_id"],
        request.match_info["plugin_id"],
        body,
        actor_id,
    )
    return web.json_response({"membership": membership.to_api_dict()})


@require_permission("plugin.event.check_in")
async def handle_event_check_in(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    membership = record_check_in(
        runtime.membership_store, request.match_info["context_id"], request.match_info["user_id"]
    )
    return web.json_response({"membership": membership.to_api_dict()})


# -- activities --------------------------------------------------------------


async def _create_note(request: web.Request, user_id: str, context_id: str | None) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    content = body.get("content")
    if not isinstance(content, str) or not content.strip():
        raise BadRequest("content required")
    sensitive = body.get("sensitive", False)
    if not isinstance(sensitive, bool):
        raise BadRequest("sensitive must be a boolean")
    activity = await runtime.activities.create_note(
        user_id,
        content=content,
        to=_str_list(body, "to"),
        cc=_str_list(body, "cc"),
        context_id=context_id if context_id is not None else _optional_str(body, "context_id"),
        in_reply_to=_optional_str(body, "in_reply_to"),
        summary=_optional_str(body, "summary"),
        sensitive=sensitive,
        activity_type=_optional_str(body, "type") or "CREATE",
    )
    return web.json_response({"activity": activity.to_api_dict()}, status=201)


async def handle_activity_create(request: web.Request) -> web.Response:
    return await _create_note(request, require_user(request), None)


@require_permission("activity.create")
async def handle_context_activity_create(request: web.Request) -> web.Response:
    auth = request["auth"]
    return await _create_note(request, auth["user_id"], auth["context_id"])


async def handle_activity_get(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    activity = await runtime.activities.get_visible(request.match_info["activity_id"], authenticate(request))
    if activity is None:
        raise NotFound("Activity not found")
    return web.json_response({"activity": activity.to_api_dict()})


async def handle_activity_delete(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    await runtime.activities.delete(user_id, request.match_info["activity_id"])
    return web.json_response({"status": "ok"})


async def handle_like(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    activity = await runtime.activities.like(user_id, request.match_info["activity_id"])
    return web.json_response({"activity": activity.to_api_dict()}, status=201)


async def handle_unlike(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    await runtime.activities.unlike(user_id, request.match_info["activity_id"])
    return web.json_response({"status": "ok"})


async def handle_announce(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    body = await _read_json(request)
    activity = await runtime.activities.announce(
        user_id,
        request.match_info["activity_id"],
        to=_str_list(body, "to") if "to" in body else None,
        cc=_str_list(body, "cc") if "cc" in body else None,
    )
    return web.json_response({"activity": activity.to_api_dict()}, status=201)


async def handle_unannounce(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    await runtime.activities.unannounce(user_id, request.match_info["activity_id"])
    return web.json_response({"status": "ok"})


async def handle_thread(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    thread = await runtime.timeline.get_activity_thread(request.match_info["activity_id"], authenticate(request))
    if thread is None:
        return web.json_response({"root": None, "replies": [], "total_replies": 0})
    return web.json_response(thread.to_api_dict())


async def handle_replies(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    page = await runtime.timeline.get_replies(
        request.match_info["activity_id"],
        authenticate(request),
        cursor=_query_int(request, "cursor"),
        limit=_query_int(request, "limit"),
    )
    return web.json_response(page.to_api_dict())


async def handle_likers(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    page = await runtime.timeline.get_likers(
        request.match_info["activity_id"],
        authenticate(request),
        cursor=_query_int(request, "cursor"),
        limit=_query_int(request, "limit"),
    )
    return web.json_response(page.to_api_dict())


async def handle_reposters(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    page = await runtime.timeline.get_reposters(
        request.match_info["activity_id"],
        authenticate(request),
        cursor=_query_int(request, "cursor"),
        limit=_query_int(request, "limit"),
    )
    return web.json_response(page.to_api_dict())


# -- timelines ---------------------------------------------------------------


async def handle_public_timeline(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    page = await runtime.timeline.get_public_timeline(
        authenticate(request),
        cursor=_query_int(request, "cursor"),
        limit=_query_int(request, "limit"),
        include_replies=_query_bool(request, "include_replies"),
    )
    return web.json_response(page.to_api_dict())


async def handle_home_timeline(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    page = await runtime.timeline.get_home_timeline(
        user_id,
        cursor=_query_int(request, "cursor"),
        limit=_query_int(request, "limit"),
        include_replies=_query_bool(request, "include_replies"),
    )
    return web.json_response(page.to_api_dict())


async def handle_context_timeline(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    page = await runtime.timeline.get_context_timeline(
        request.match_info["context_id"],
        authenticate(request),
        cursor=_query_int(request, "cursor"),
        limit=_query_int(request, "limit"),
        include_replies=request.query.get("include_replies", "true").lower() not in {"0", "false", "no"},
    )
    return web.json_response(page.to_api_dict())


async def handle_user_timeline(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    page = await runtime.timeline.get_user_timeline(
        request.match_info["user_id"],
        authenticate(request),
        cursor=_query_int(request, "cursor"),
        limit=_query_int(request, "limit"),
        include_replies=_query_bool(request, "include_replies"),
        include_reposts=request.query.get("include_reposts", "true").lower() not in {"0", "false", "no"},
    )
    return web.json_response(page.to_api_dict())


# -- follows -----------------------------------------------------------------


async def handle_follow(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    follow = await runtime.activities.follow_user(user_id, request.match_info["user_id"])
    return web.json_response({"follow": follow.to_api_dict()}, status=201)


async def handle_unfollow(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    await runtime.activities.unfollow_user(user_id, request.match_info["user_id"])
    return web.json_response({"status": "ok"})


# -- inbox -------------------------------------------------------------------


async def handle_inbox_list(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    page = runtime.inbox.list_notifications(
        user_id,
        category=request.query.get("category", "all"),
        unread_only=_query_bool(request, "unread_only"),
        cursor=_query_int(request, "cursor"),
        limit=runtime.config.clamp_page_size(_query_int(request, "limit")),
    )
    activities = runtime.activity_store.get_many(item.activity_id for item in page.items)
    items = []
    for item in page.items:
        body = item.to_api_dict()
        activity = activities.get(item.activity_id)
        body["activity"] = activity.to_api_dict() if activity is not None else None
        items.append(body)
    return web.json_response({"items": items, "next_cursor": page.next_cursor})


async def handle_inbox_read(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    body = await _read_json(request)
    item_ids = body.get("item_ids")
    if not isinstance(item_ids, list) or any(not isinstance(i, int) or isinstance(i, bool) for i in item_ids):
        raise BadRequest("item_ids must be a list of integers")
    updated = runtime.inbox.mark_items_read(user_id, item_ids)
    return web.json_response({"updated": updated})


async def handle_inbox_read_all(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    body = await _read_json(request)
    updated = runtime.inbox.mark_all_read(user_id, _optional_str(body, "category"))
    return web.json_response({"updated": updated})


async def handle_inbox_unread_counts(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    return web.json_response(runtime.inbox.get_unread_counts(user_id))


async def handle_inbox_delete(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = require_user(request)
    try:
        item_id = int(request.match_info["item_id"])
    except ValueError:
        raise BadRequest("item_id must be an integer") from None
    if not runtime.inbox.delete_notification(user_id, item_id):
        raise NotFound("Notification not found")
    return web.json_response({"status": "ok"})


# -- live stream -------------------------------------------------------------


async def _resolve_channel(request: web.Request, user_id: str | None) -> str:
    runtime = _runtime(request)
    requested = request.query.get("channel", GLOBAL_CHANNEL)
    if requested == GLOBAL_CHANNEL:
        return GLOBAL_CHANNEL
    if requested == "HOME":
        if user_id is None:
            raise Unauthorized("Unauthorized: Not logged in")
        return home_channel(user_id)
    if requested.startswith("CONTEXT:"):
        context_id = requested[len("CONTEXT:") :]
        if not context_id or not await runtime.contexts.can_view_feed(context_id, user_id):
            raise NotFound("Context not found")
        return context_channel(context_id)
    raise BadRequest(f"unknown channel: {requested}")


async def handle_stream(request: web.Request) -> web.StreamResponse:
    runtime = _runtime(request)
    user_id = authenticate(request)
    channel = await _resolve_channel(request, user_id)

    response = web.StreamResponse(
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-store",
            "Connection": "keep-alive",
        }
    )
    await response.prepare(request)

    connection = LiveConnection(user_id)
    runtime.broadcaster.add_connection(channel, connection)
    try:
        await response.write(encode_event({"channel": channel}, "ready").encode("utf-8"))
        while True:
            frame = await connection.next_message()
            if frame is None:
                break
            await response.write(frame.encode("utf-8"))
    except ConnectionResetError:
        logger.debug("live stream on %s closed by client", channel)
    finally:
        connection.close()
        runtime.broadcaster.remove_connection(channel, connection)
    return response


def create_app(
    config: AgoraConfig | None = None,
    *,
    registry: PluginRegistry | None = None,
    start_sweeper: bool = True,
) -> web.Application:
    config = config or AgoraConfig()
    runtime = Runtime(config, registry=registry)

    app = web.Application(middlewares=[error_middleware])
    app["runtime"] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)

    app.router.add_post("/v1/contexts", handle_context_create)
    app.router.add_get("/v1/contexts/{context_id}", handle_context_get)
    app.router.add_patch("/v1/contexts/{context_id}", handle_context_update)
    app.router.add_post("/v1/contexts/{context_id}/archive", handle_context_archive)
    app.router.add_post("/v1/contexts/{context_id}/join", handle_context_join)
    app.router.add_post("/v1/contexts/{context_id}/leave", handle_context_leave)
    app.router.add_put("/v1/contexts/{context_id}/plugins/{plugin_id}", handle_context_plugin_update)
    app.router.add_get("/v1/contexts/{context_id}/permissions", handle_context_permissions)

    app.router.add_get("/v1/contexts/{context_id}/members", handle_member_list)
    app.router.add_get("/v1/contexts/{context_id}/members/counts", handle_member_counts)
    app.router.add_post("/v1/contexts/{context_id}/members/{user_id}/role", handle_member_role)
    app.router.add_post("/v1/contexts/{context_id}/members/{user_id}/approve", handle_member_approve)
    app.router.add_post("/v1/contexts/{context_id}/members/{user_id}/reject", handle_member_reject)
    app.router.add_post("/v1/contexts/{context_id}/members/{user_id}/ban", handle_member_ban)
    app.router.add_post("/v1/contexts/{context_id}/members/{user_id}/unban", handle_member_unban)
    app.router.add_put(
        "/v1/contexts/{context_id}/members/{user_id}/plugins/{plugin_id}", handle_member_plugin_update
    )
    app.router.add_post("/v1/contexts/{context_id}/event/check-in/{user_id}", handle_event_check_in)

    app.router.add_post("/v1/activities", handle_activity_create)
    app.router.add_post("/v1/contexts/{context_id}/activities", handle_context_activity_create)
    app.router.add_get("/v1/activities/{activity_id}", handle_activity_get)
    app.router.add_delete("/v1/activities/{activity_id}", handle_activity_delete)
    app.router.add_post("/v1/activities/{activity_id}/like", handle_like)
    app.router.add_delete("/v1/activities/{activity_id}/like", handle_unlike)
    app.router.add_post("/v1/activities/{activity_id}/announce", handle_announce)
    app.router.add_delete("/v1/activities/{activity_id}/announce", handle_unannounce)
    app.router.add_get("/v1/activities/{activity_id}/thread", handle_thread)
    app.router.add_get("/v1/activities/{activity_id}/replies", handle_replies)
    app.router.add_get("/v1/activities/{activity_id}/likers", handle_likers)
    app.router.add_get("/v1/activities/{activity_id}/reposters", handle_reposters)

    app.router.add_get("/v1/timeline/public", handle_public_timeline)
    app.router.add_get("/v1/timeline/home", handle_home_timeline)
    app.router.add_get("/v1/contexts/{context_id}/timeline", handle_context_timeline)
    app.router.add_get("/v1/users/{user_id}/timeline", handle_user_timeline)

    app.router.add_post("/v1/follows/{user_id}", handle_follow)
    app.router.add_delete("/v1/follows/{user_id}", handle_unfollow)

    app.router.add_get("/v1/inbox", handle_inbox_list)
    app.router.add_post("/v1/inbox/read", handle_inbox_read)
    app.router.add_post("/v1/inbox/read-all", handle_inbox_read_all)
    app.router.add_get("/v1/inbox/unread-counts", handle_inbox_unread_counts)
    app.router.add_delete("/v1/inbox/{item_id}", handle_inbox_delete)

    app.router.add_get("/v1/stream", handle_stream)

    async def start_live(_: web.Application) -> None:
        if start_sweeper:
            runtime.broadcaster.start_sweeper()

    async def close_live(_: web.Application) -> None:
        runtime.broadcaster.close_all()

    async def stop_live(_: web.Application) -> None:
        await runtime.broadcaster.stop_sweeper()

    async def close_db(_: web.Application) -> None:
        runtime.backend.close()

    app.on_startup.append(start_live)
    app.on_shutdown.append(close_live)
    app.on_cleanup.append(stop_live)
    app.on_cleanup.append(close_db)
    return app
