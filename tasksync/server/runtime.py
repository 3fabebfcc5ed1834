from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus
from typing import Any, Awaitable, Callable, Dict, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from tasksync.core import proto
from tasksync.core.connection import Connection
from tasksync.core.dispatch import EventDispatcher
from tasksync.core.errors import Unauthorized
from tasksync.core.identity import Identity, IdentityGate, TokenVerifier, extract_token
from tasksync.core.liveness import LivenessMonitor
from tasksync.core.registry import MembershipRegistry
from tasksync.core.router import RoomRouter
from tasksync.core.store import Store
from tasksync.utils import canonical

log = logging.getLogger("tasksync.server.runtime")

PermissionCheck = Callable[[str, str], Awaitable[bool]]  # (user_id, room_id) -> may join


class ServerRuntime:
    """WebSocket front of the collaboration layer.

    The CRUD layer shares this process and calls ``runtime.dispatcher.publish``
    after each committed mutation.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        *,
        store: Optional[Store] = None,
        permission_check: Optional[PermissionCheck] = None,
    ) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:5000"))
        self.db_path = config.get("db_path", "tasksync.db")
        self.ping_interval = float(config.get("ping_interval_secs", 20))
        self.ping_timeout = float(config.get("ping_timeout_secs", 20))

        delivery = config.get("delivery") or {}
        self.queue_size = int(delivery.get("queue_size", 256))
        self.overflow = delivery.get("overflow", "drop_oldest")
        suppress_echo = bool(delivery.get("suppress_origin_echo", True))

        liveness = config.get("liveness") or {}

        self.store = store or Store(self.db_path)
        self._owns_store = store is None
        self.registry = MembershipRegistry()
        self.router = RoomRouter(self.registry)
        self.dispatcher = EventDispatcher(self.router, suppress_origin_echo=suppress_echo)
        self.liveness = LivenessMonitor(
            self.registry,
            interval_s=float(liveness.get("sweep_interval_secs", 60)),
            stale_after_s=float(liveness.get("stale_after_secs", 300)),
            on_evict=self._evict,
        )
        self.gate: Optional[IdentityGate] = None
        self.permission_check = permission_check or self._store_permission

        self.registry.on_online(self.dispatcher.user_online)
        self.registry.on_offline(self.dispatcher.user_offline)

        self._handshakes: Dict[Any, Identity] = {}
        self._ws_server: Optional[Server] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._owns_store:
            await self.store.open()
        verifier = TokenVerifier.from_config(self.cfg.get("auth") or {})
        self.gate = IdentityGate(verifier, self.store.get_user)

        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            process_request=self._process_request,
            process_response=self._process_response,
            ping_interval=None,  # _keepalive pings and feeds last_seen
        )
        log.info("tasksync listening on ws://%s:%d", self.listen_host, self.bound_port)
        self.liveness.start()

    async def stop(self) -> None:
        await self.liveness.stop()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        for conn in self.registry.close():
            await conn.close()
        self.router.clear()
        self._handshakes.clear()

        if self._owns_store:
            await self.store.close()
        log.info("tasksync stopped")

    @property
    def bound_port(self) -> int:
        if self._ws_server is None:
            return self.listen_port
        for sock in self._ws_server.sockets:
            return sock.getsockname()[1]
        return self.listen_port

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        """Authenticate before the upgrade; a refusal is a plain HTTP 401."""

        if self.gate is None:
            return connection.respond(HTTPStatus.SERVICE_UNAVAILABLE, "Not ready\n")
        token = extract_token(request.path, request.headers)
        try:
            identity = await self.gate.authenticate(token)
        except Unauthorized as exc:
            log.info("Handshake rejected from %s: %s", self._fmt_remote(connection), exc.reason)
            return connection.respond(HTTPStatus.UNAUTHORIZED, "Unauthorized\n")
        self._handshakes[connection.id] = identity
        return None

    def _process_response(self, connection: ServerConnection, request: Request, response: Response) -> None:
        if response.status_code != HTTPStatus.SWITCHING_PROTOCOLS:
            self._handshakes.pop(connection.id, None)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        identity = self._handshakes.pop(websocket.id, None)
        if identity is None:
            await websocket.close(code=1008, reason="unauthorized")
            return

        conn = Connection(
            user_id=identity.user_id,
            push=websocket.send,
            hangup=websocket.close,
            queue_size=self.queue_size,
            overflow=self.overflow,
            user_name=identity.name,
        )
        writer = asyncio.create_task(conn.run_writer(), name=f"writer-{conn.id}")
        keepalive = asyncio.create_task(self._keepalive(websocket, conn), name=f"keepalive-{conn.id}")
        conn.enqueue(
            proto.encode(proto.Connected(payload=proto.SessionInfo(user_id=identity.user_id, connection_id=conn.id)))
        )
        try:
            self.registry.register(identity.user_id, conn)
        except RuntimeError:
            writer.cancel()
            keepalive.cancel()
            await websocket.close(code=1001, reason="shutting down")
            return
        log.info("User %s connected from %s as %s", identity.user_id, self._fmt_remote(websocket), conn.id)

        try:
            async for raw in websocket:
                self.registry.touch(conn.id)
                try:
                    message = proto.parse_client_message(raw)
                except ValueError:
                    code, detail = self._classify(raw)
                    self._send_error(conn, code, detail)
                    continue
                await self._dispatch(conn, message)
        except ConnectionClosed:
            pass
        finally:
            await self._on_disconnect(conn)
            writer.cancel()
            keepalive.cancel()
            await asyncio.gather(writer, keepalive, return_exceptions=True)

    async def _keepalive(self, websocket: ServerConnection, conn: Connection) -> None:
        """A pong counts as activity; a silent listener stays registered."""

        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                pong = await websocket.ping()
                await asyncio.wait_for(pong, self.ping_timeout)
            except asyncio.TimeoutError:
                log.info("No pong from %s within %.1fs", conn.id, self.ping_timeout)
                continue
            except ConnectionClosed:
                return
            self.registry.touch(conn.id)

    async def _dispatch(self, conn: Connection, message: Any) -> None:
        type_ = message.type
        if type_ == "heartbeat":
            pass  # touch() above is all a heartbeat does
        elif type_ == "room:join":
            await self._handle_room_join(conn, message.payload.room_id)
        elif type_ == "room:leave":
            self._handle_room_leave(conn, message.payload.room_id)
        elif type_ in {"typing:start", "typing:stop"}:
            self._handle_typing(conn, type_, message.payload.task_id)
        elif type_ == "user:status":
            self._handle_status(conn, message.payload.status)
        elif type_ == "presence:list":
            self._handle_presence_list(conn)
        elif type_ == "message:private":
            self._handle_private(conn, message.payload.to_user_id, message.payload.message)
        else:
            self._send_error(conn, "UNKNOWN_TYPE", f"unsupported type {type_}")

    # ------------------------------------------------------------------
    # Advisory messages
    # ------------------------------------------------------------------

    async def _handle_room_join(self, conn: Connection, room_id: str) -> None:
        if not await self.may_join(conn.user_id, room_id):
            self._send_error(conn, "FORBIDDEN", f"no access to room {room_id}")
            return
        self.router.join(room_id, conn.id)
        conn.enqueue(proto.encode(proto.RoomAck(type="room:joined", payload=proto.RoomRef(room_id=room_id))))
        peer = proto.RoomPeer(type="room:user_joined", payload=proto.RoomMember(room_id=room_id, user_id=conn.user_id))
        self.router.deliver_room(room_id, proto.encode(peer), exclude=conn.id)

    def _handle_room_leave(self, conn: Connection, room_id: str) -> None:
        if self.router.leave(room_id, conn.id):
            self._announce_left(room_id, conn.user_id)
        conn.enqueue(proto.encode(proto.RoomAck(type="room:left", payload=proto.RoomRef(room_id=room_id))))

    def _handle_typing(self, conn: Connection, type_: str, task_id: str) -> None:
        if task_id not in self.router.rooms_of(conn.id):
            self._send_error(conn, "FORBIDDEN", f"join room {task_id} first")
            return
        event = proto.Typing(type=type_, payload=proto.TypingInfo(task_id=task_id, user_id=conn.user_id))
        self.router.deliver_room(task_id, proto.encode(event), exclude=conn.id)

    def _handle_status(self, conn: Connection, status: str) -> None:
        self.registry.set_status(conn.user_id, status)
        event = proto.StatusChanged(payload=proto.StatusInfo(user_id=conn.user_id, status=status))
        self.router.broadcast(proto.encode(event))

    def _handle_presence_list(self, conn: Connection) -> None:
        users = [proto.PresenceItem(user_id=uid, status=status) for uid, status in self.registry.snapshot()]
        conn.enqueue(proto.encode(proto.PresenceSnapshot(payload=proto.PresenceList(users=users))))

    def _handle_private(self, conn: Connection, to_user_id: str, text: str) -> None:
        # Offline or unknown targets get nothing back: at-most-once, no store.
        info = proto.PrivateInfo(from_user_id=conn.user_id, from_user_name=conn.user_name, message=text)
        delivered = self.router.deliver({to_user_id}, proto.encode(proto.PrivateMessage(payload=info)))
        log.debug("Private message %s -> %s reached %d connection(s)", conn.user_id, to_user_id, delivered)

    async def may_join(self, user_id: str, room_id: str) -> bool:
        if room_id == user_id:
            return True
        try:
            return await self.permission_check(user_id, room_id)
        except Exception:
            log.exception("Permission check failed for %s on %s", user_id, room_id)
            return False

    async def _store_permission(self, user_id: str, room_id: str) -> bool:
        """Task rooms are open to anyone who can at least read the task."""

        return await self.store.has_permission(room_id, user_id, "read")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _on_disconnect(self, conn: Connection) -> None:
        for room_id in self.router.leave_all(conn.id):
            self._announce_left(room_id, conn.user_id)
        if self.registry.unregister(conn.id) is not None:
            log.info("User %s disconnected (%s)", conn.user_id, conn.id)
        conn.closed = True

    async def _evict(self, conn: Connection) -> None:
        for room_id in self.router.leave_all(conn.id):
            self._announce_left(room_id, conn.user_id)
        await conn.close()

    def _announce_left(self, room_id: str, user_id: str) -> None:
        peer = proto.RoomPeer(type="room:user_left", payload=proto.RoomMember(room_id=room_id, user_id=user_id))
        self.router.deliver_room(room_id, proto.encode(peer))

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def _send_error(self, conn: Connection, code: str, detail: str) -> None:
        conn.enqueue(proto.encode(proto.error_frame(code, detail)))

    @staticmethod
    def _classify(raw: Any) -> tuple[str, str]:
        try:
            obj = canonical.loads(raw)
        except ValueError:
            return "BAD_PAYLOAD", "frame is not valid JSON"
        type_ = obj.get("type") if isinstance(obj, dict) else None
        if type_ not in proto.CLIENT_TYPES:
            return "UNKNOWN_TYPE", f"unsupported type {type_}"
        return "BAD_PAYLOAD", f"invalid {type_} payload"

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["ServerRuntime"]
