from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Awaitable, Callable, List

from aiohttp import WSMsgType, web

from .admin_guard import AdminAuthGuard
from .config import Settings
from .connections import NO_CONNECTION, ConnectionStateMachine
from .conversations import ConversationResolver
from .errors import (
    AlreadyExists,
    AlumNodeError,
    Conflict,
    InvalidTransition,
    NotFound,
    OperationFailed,
    TransportFailure,
    ValidationFailure,
)
from .hub import DELETE, INSERT, UPDATE, ChangeEvent, Subscription
from .messages import MessageStore
from .models import ROLE_SUPER_ADMIN, STATUS_ACCEPTED, STATUS_PENDING, to_api_dict
from .notifications import NotificationStore
from .read_state import ReadStateReconciler
from .sessions import Session, SessionStore
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteStore
from .store import Filter, InMemoryStore, Store
from .users import UserDirectory

logger = logging.getLogger(__name__)

OUTBOUND_QUEUE_SIZE = 1000


class Runtime:
    def __init__(self, *, store: Store, settings: Settings, sessions: SessionStore) -> None:
        self.store = store
        self.settings = settings
        self.sessions = sessions
        self.users = UserDirectory(store)
        self.notifications = NotificationStore(store)
        self.conversations = ConversationResolver(store)
        self.messages = MessageStore(store, notifications=self.notifications, page_size=settings.message_page_size)
        self.read_state = ReadStateReconciler(store)
        self.connections = ConnectionStateMachine(
            store,
            notifications=self.notifications,
            allow_rerequest_after_decline=settings.allow_rerequest_after_decline,
        )

    def admin_guard(self) -> AdminAuthGuard:
        return AdminAuthGuard(
            self.users,
            fail_open=self.settings.admin_fail_open,
            verify_timeout_s=self.settings.admin_verify_timeout_s,
            redirect_delay_s=self.settings.admin_redirect_delay_s,
        )


RUNTIME_KEY = web.AppKey("runtime", Runtime)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "invalid session_token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _no_store_response(data: dict[str, Any], status: int = 200) -> web.Response:
    return _with_no_store(web.json_response(data, status=status))


def _classify(exc: BaseException) -> tuple[str, int]:
    if isinstance(exc, ValidationFailure):
        return "invalid_request", 400
    if isinstance(exc, PermissionError):
        return "forbidden", 403
    if isinstance(exc, NotFound):
        return "not_found", 404
    if isinstance(exc, AlreadyExists):
        return "already_exists", 409
    if isinstance(exc, InvalidTransition):
        return "invalid_transition", 409
    if isinstance(exc, Conflict):
        return "conflict", 409
    if isinstance(exc, (TransportFailure, OperationFailed)):
        return "unavailable", 503
    return "internal", 500


def _error_for(exc: BaseException) -> web.Response:
    code, status = _classify(exc)
    if status == 503:
        return _error(code, "store unavailable", status)
    return _error(code, str(exc) or code, status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except (AlumNodeError, PermissionError) as exc:
        if isinstance(exc, (TransportFailure, OperationFailed)):
            logger.error("store failure on %s %s: %s", request.method, request.path, exc)
        return _error_for(exc)


def _authenticate_request(request: web.Request) -> Session | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get_by_session(session_token)


async def _json_body(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _int_query(request: web.Request, name: str, default: int | None) -> int | None:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationFailure(f"{name} must be an integer") from None
    if value < 0:
        raise ValidationFailure(f"{name} must be non-negative")
    return value


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_session_start(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    user_id = body.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        return _invalid_request("user_id required")
    secret = runtime.settings.session_secret
    if secret is not None:
        offered = body.get("secret")
        if not isinstance(offered, str) or not secrets.compare_digest(offered, secret):
            return _unauthorized()
    user = await runtime.users.find(user_id)
    if user is None or not user.is_active:
        return _unauthorized()
    if secret is None and user.is_admin:
        return _error("forbidden", "admin sessions require a configured session secret", status=403)
    session = runtime.sessions.create(user.id, user.role)
    return _no_store_response(
        {"session_token": session.session_token, "expires_at": session.expires_at_ms, "role": session.role}
    )


async def handle_user_register(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    name = body.get("name")
    email = body.get("email")
    if not isinstance(name, str) or not isinstance(email, str):
        return _invalid_request("name and email required")
    user = await runtime.users.register(
        name=name,
        email=email,
        organization_id=body.get("organization_id"),
        avatar_url=body.get("avatar_url"),
    )
    return web.json_response({"user": to_api_dict(user)}, status=201)


async def handle_user_directory(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    if _authenticate_request(request) is None:
        return _with_no_store(_unauthorized())
    users = await runtime.users.directory(
        organization_id=request.query.get("organization_id") or None,
        limit=_int_query(request, "limit", None),
    )
    return _no_store_response({"users": [user.public_profile() for user in users]})


async def handle_user_get(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    if _authenticate_request(request) is None:
        return _with_no_store(_unauthorized())
    user = await runtime.users.get(request.match_info["user_id"])
    return _no_store_response({"user": user.public_profile()})


async def handle_conversations_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    summaries = await runtime.conversations.list_conversations(session.user_id)
    return _no_store_response({"conversations": [s.to_api_dict() for s in summaries]})


async def handle_conversation_open(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    peer_user_id = body.get("peer_user_id")
    if not isinstance(peer_user_id, str) or not peer_user_id:
        return _invalid_request("peer_user_id required")
    await runtime.users.get(peer_user_id)
    conversation_id, is_new = await runtime.conversations.get_or_create_conversation(session.user_id, peer_user_id)
    return web.json_response({"conversation_id": conversation_id, "is_new": is_new}, status=201 if is_new else 200)


async def handle_conversation_delete(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    await runtime.conversations.delete_conversation(request.match_info["conversation_id"], session.user_id)
    return web.json_response({"status": "ok"})


async def _require_participant(runtime: Runtime, conversation_id: str, user_id: str) -> None:
    conversation = await runtime.conversations.get_conversation(conversation_id)
    if user_id not in conversation.participant_ids:
        raise PermissionError("forbidden")


async def handle_messages_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    conversation_id = request.match_info["conversation_id"]
    await _require_participant(runtime, conversation_id, session.user_id)
    messages = await runtime.messages.get_messages(
        conversation_id,
        limit=_int_query(request, "limit", None),
        after_seq=_int_query(request, "after_seq", 0) or 0,
    )
    return _no_store_response({"messages": [to_api_dict(m) for m in messages]})


async def handle_message_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    content = body.get("content")
    if not isinstance(content, str):
        return _invalid_request("content required")
    message = await runtime.messages.send_message(request.match_info["conversation_id"], session.user_id, content)
    return web.json_response({"message": to_api_dict(message)}, status=201)


async def handle_conversation_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    conversation_id = request.match_info["conversation_id"]
    await _require_participant(runtime, conversation_id, session.user_id)
    marked = await runtime.read_state.mark_as_read(conversation_id, session.user_id)
    return web.json_response({"status": "ok", "marked": marked})


async def handle_unread_count(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    count = await runtime.read_state.get_unread_count(session.user_id)
    per_conversation = await runtime.read_state.unread_by_conversation(session.user_id)
    return _no_store_response({"count": count, "conversations": per_conversation})


async def handle_connections_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    entries = await runtime.connections.list_connections(session.user_id)
    return _no_store_response({"connections": [e.to_api_dict() for e in entries]})


async def handle_connection_request(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    recipient_id = body.get("recipient_id")
    message = body.get("message")
    if not isinstance(recipient_id, str) or not recipient_id:
        return _invalid_request("recipient_id required")
    if message is not None and not isinstance(message, str):
        return _invalid_request("message must be a string")
    connection = await runtime.connections.send_request(recipient_id, session.user_id, message)
    return web.json_response({"connection": to_api_dict(connection)}, status=201)


async def handle_connection_status(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    other_user_id = request.query.get("user_id")
    if not other_user_id:
        return _with_no_store(_invalid_request("user_id required"))
    try:
        status = await runtime.connections.get_connection_status(session.user_id, other_user_id)
    except TransportFailure:
        # Status only drives UI affordances; an unreachable store reads as no connection.
        logger.warning("connection status lookup failed for %s/%s", session.user_id, other_user_id, exc_info=True)
        status = NO_CONNECTION
    return _no_store_response(status.to_api_dict())


async def handle_connections_pending(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    entries = await runtime.connections.pending_requests(session.user_id)
    return _no_store_response({"requests": [e.to_api_dict() for e in entries]})


async def handle_connections_sent(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    entries = await runtime.connections.sent_requests(session.user_id)
    return _no_store_response({"requests": [e.to_api_dict() for e in entries]})


async def handle_connection_respond(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    accept = body.get("accept")
    if not isinstance(accept, bool):
        return _invalid_request("accept must be a boolean")
    connection = await runtime.connections.respond_to_request(
        request.match_info["connection_id"], accept, actor_id=session.user_id
    )
    return web.json_response({"connection": to_api_dict(connection)})


async def handle_connection_delete(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    connection_id = request.match_info["connection_id"]
    connection = await runtime.connections.get_connection(connection_id)
    if connection.status == STATUS_PENDING and connection.requester_id == session.user_id:
        await runtime.connections.withdraw_request(connection_id, session.user_id)
    else:
        await runtime.connections.remove_connection(connection_id, session.user_id)
    return web.json_response({"status": "ok"})


async def handle_notifications_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    notifications = await runtime.notifications.list_for_user(
        session.user_id, limit=_int_query(request, "limit", 20) or 20
    )
    unread = await runtime.notifications.unread_count(session.user_id)
    return _no_store_response({"notifications": [to_api_dict(n) for n in notifications], "unread": unread})


async def handle_notifications_read(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    notification_id = body.get("notification_id")
    if notification_id is None:
        marked = await runtime.notifications.mark_all_as_read(session.user_id)
    elif isinstance(notification_id, str):
        marked = int(await runtime.notifications.mark_as_read(notification_id, session.user_id))
    else:
        return _invalid_request("notification_id must be a string")
    return web.json_response({"status": "ok", "marked": marked})


@web.middleware
async def admin_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if not request.path.startswith("/v1/admin/"):
        return await handler(request)
    runtime = request.app[RUNTIME_KEY]
    decision = await runtime.admin_guard().check(_authenticate_request(request))
    if decision.authorized:
        return await handler(request)
    status = 401 if decision.reason == "not authenticated" else 403
    return _with_no_store(
        web.json_response(
            {
                "code": "unauthorized" if status == 401 else "forbidden",
                "message": decision.reason,
                "redirect_to": decision.redirect_to,
                "redirect_after_ms": int(decision.redirect_after_s * 1000),
            },
            status=status,
        )
    )


async def handle_admin_users(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    users = await runtime.users.directory(
        organization_id=request.query.get("organization_id") or None,
        include_inactive=True,
        limit=_int_query(request, "limit", None),
    )
    return _no_store_response({"users": [to_api_dict(user) for user in users]})


async def handle_admin_set_role(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    actor = await runtime.users.find(session.user_id) if session else None
    if actor is None or actor.role != ROLE_SUPER_ADMIN:
        return _error("forbidden", "only super admins may change roles", 403)
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    role = body.get("role")
    if not isinstance(role, str):
        return _invalid_request("role required")
    user = await runtime.users.set_role(request.match_info["user_id"], role)
    runtime.sessions.invalidate_user(user.id)
    return web.json_response({"user": to_api_dict(user)})


async def handle_admin_deactivate(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = await runtime.users.deactivate(request.match_info["user_id"])
    runtime.sessions.invalidate_user(user.id)
    return web.json_response({"user": to_api_dict(user)})


async def handle_admin_stats(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    store = runtime.store
    return _no_store_response(
        {
            "active_users": await runtime.users.count(),
            "conversations": await store.count("conversations"),
            "messages": await runtime.messages.count(),
            "pending_connections": await store.count("connections", Filter(eq={"status": STATUS_PENDING})),
            "accepted_connections": await store.count("connections", Filter(eq={"status": STATUS_ACCEPTED})),
        }
    )


def create_app(
    *,
    settings: Settings | None = None,
    store: Store | None = None,
    sessions: SessionStore | None = None,
) -> web.Application:
    settings = settings or Settings()
    if store is None:
        if settings.db_path:
            store = SQLiteStore(SQLiteBackend(settings.db_path))
        else:
            store = InMemoryStore()
    runtime = Runtime(
        store=store,
        settings=settings,
        sessions=sessions or SessionStore(ttl_ms=settings.session_ttl_ms),
    )

    app = web.Application(middlewares=[error_middleware, admin_middleware])
    app[RUNTIME_KEY] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_post("/v1/users", handle_user_register)
    app.router.add_get("/v1/users", handle_user_directory)
    app.router.add_get("/v1/users/{user_id}", handle_user_get)
    app.router.add_get("/v1/conversations", handle_conversations_list)
    app.router.add_post("/v1/conversations", handle_conversation_open)
    app.router.add_delete("/v1/conversations/{conversation_id}", handle_conversation_delete)
    app.router.add_get("/v1/conversations/{conversation_id}/messages", handle_messages_list)
    app.router.add_post("/v1/conversations/{conversation_id}/messages", handle_message_send)
    app.router.add_post("/v1/conversations/{conversation_id}/read", handle_conversation_read)
    app.router.add_get("/v1/messages/unread", handle_unread_count)
    app.router.add_get("/v1/connections", handle_connections_list)
    app.router.add_post("/v1/connections", handle_connection_request)
    app.router.add_get("/v1/connections/status", handle_connection_status)
    app.router.add_get("/v1/connections/pending", handle_connections_pending)
    app.router.add_get("/v1/connections/sent", handle_connections_sent)
    app.router.add_post("/v1/connections/{connection_id}/respond", handle_connection_respond)
    app.router.add_delete("/v1/connections/{connection_id}", handle_connection_delete)
    app.router.add_get("/v1/notifications", handle_notifications_list)
    app.router.add_post("/v1/notifications/read", handle_notifications_read)
    app.router.add_get("/v1/admin/users", handle_admin_users)
    app.router.add_post("/v1/admin/users/{user_id}/role", handle_admin_set_role)
    app.router.add_post("/v1/admin/users/{user_id}/deactivate", handle_admin_deactivate)
    app.router.add_get("/v1/admin/stats", handle_admin_stats)
    app.router.add_get("/v1/ws", websocket_handler)

    async def close_store(_: web.Application) -> None:
        store.close()

    app.on_cleanup.append(close_store)
    return app


class _ReplayGate:
    """Holds change events back until the snapshot they follow has been queued."""

    def __init__(self, forward: Callable[[ChangeEvent], None]) -> None:
        self._forward = forward
        self._held: List[ChangeEvent] | None = []

    def __call__(self, event: ChangeEvent) -> None:
        if self._held is not None:
            self._held.append(event)
            return
        self._forward(event)

    def release(self) -> None:
        held, self._held = self._held or [], None
        for event in held:
            self._forward(event)


def _event_frame(event: ChangeEvent | dict) -> dict[str, Any]:
    if isinstance(event, ChangeEvent):
        return {
            "v": 1,
            "t": f"message.{event.kind}",
            "body": {
                "conversation_id": event.row.get("conversation_id"),
                "id": event.row_id,
                "sender_id": event.row.get("sender_id"),
                "content": event.row.get("content"),
                "is_read": event.row.get("is_read"),
                "seq": event.row.get("seq"),
                "created_at_ms": event.row.get("created_at_ms"),
            },
        }
    return event


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """Stream message changes for the conversations a session subscribes to.

    The first frame must be ``session.auth``. ``conv.subscribe`` answers
    with a ``conv.snapshot`` of the history and then forwards changes;
    changes committed while the snapshot is read are held back and sent
    after it.
    """

    runtime = request.app[RUNTIME_KEY]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    outbound: asyncio.Queue[ChangeEvent | dict | None] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
    subscriptions: dict[str, Subscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def enqueue(event: ChangeEvent | dict) -> None:
        try:
            outbound.put_nowait(event)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                event = await outbound.get()
                if event is None:
                    break
                await ws.send_json(_event_frame(event))
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws
        if not isinstance(payload, dict):
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        body = payload.get("body") or {}
        session = None
        if payload.get("t") == "session.auth":
            session = runtime.sessions.get_by_session(str(body.get("session_token") or ""))
        if session is None:
            await ws.send_json(_error_frame("unauthorized", "invalid session_token", request_id=payload.get("id")))
            await ws.close()
            return ws
        await ws.send_json({"v": 1, "t": "session.ready", "id": payload.get("id"), "body": {"user_id": session.user_id}})

        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                if msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                    break
                await ws.close(code=1003, message=b"unsupported frame type")
                break
            try:
                frame = msg.json()
            except Exception:
                enqueue(_error_frame("invalid_request", "malformed json"))
                continue
            if not isinstance(frame, dict):
                enqueue(_error_frame("invalid_request", "frame must be an object"))
                continue

            frame_type = frame.get("t")
            frame_body = frame.get("body") or {}
            request_id = frame.get("id")

            if frame_type == "ping":
                enqueue({"v": 1, "t": "pong", "id": request_id})
            elif frame_type == "conv.subscribe":
                conversation_id = frame_body.get("conversation_id")
                if not isinstance(conversation_id, str) or not conversation_id:
                    enqueue(_error_frame("invalid_request", "conversation_id required", request_id=request_id))
                    continue
                if conversation_id in subscriptions:
                    continue
                try:
                    await _require_participant(runtime, conversation_id, session.user_id)
                except (AlumNodeError, PermissionError) as exc:
                    enqueue(_error_frame(_classify(exc)[0], str(exc), request_id=request_id))
                    continue

                gate = _ReplayGate(enqueue)
                subscriptions[conversation_id] = runtime.store.subscribe(
                    "messages", {"conversation_id": conversation_id}, gate, kinds=[INSERT, UPDATE, DELETE]
                )
                try:
                    history = await runtime.messages.get_history(conversation_id)
                except AlumNodeError as exc:
                    runtime.store.unsubscribe(subscriptions.pop(conversation_id))
                    enqueue(_error_frame("unavailable", str(exc), request_id=request_id))
                    continue
                enqueue(
                    {
                        "v": 1,
                        "t": "conv.snapshot",
                        "id": request_id,
                        "body": {"conversation_id": conversation_id, "messages": [to_api_dict(m) for m in history]},
                    }
                )
                gate.release()
            elif frame_type == "conv.unsubscribe":
                subscription = subscriptions.pop(str(frame_body.get("conversation_id")), None)
                if subscription is not None:
                    runtime.store.unsubscribe(subscription)
            else:
                enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
    finally:
        for subscription in subscriptions.values():
            runtime.store.unsubscribe(subscription)
        writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)

    return ws

