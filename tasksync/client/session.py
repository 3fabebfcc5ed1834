from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus

from tasksync.core import proto
from tasksync.core.errors import Unauthorized

from .reconcile import TaskView

log = logging.getLogger("tasksync.client.session")

RefreshFn = Callable[[], Awaitable[List[Dict[str, Any]]]]
EventFn = Callable[[BaseModel], None]


def with_token(url: str, token: str) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "token"]
    query.append(("token", token))
    return urlunsplit(parts._replace(query=urlencode(query)))


class ClientSession:
    """One user's live connection: feeds the TaskView and keeps itself connected.

    After every (re)connect the task list is rebuilt from refresh(); events
    missed while disconnected are never replayed by the server.
    """

    def __init__(
        self,
        url: str,
        token: str,
        view: Optional[TaskView] = None,
        *,
        refresh: Optional[RefreshFn] = None,
        on_event: Optional[EventFn] = None,
        heartbeat_secs: float = 25.0,
        reconnect_attempts: int = 5,
        reconnect_delay_s: float = 1.0,
    ) -> None:
        self.url = url
        self.token = token
        self.view = view or TaskView()
        self.refresh = refresh
        self.on_event = on_event
        self.heartbeat_secs = heartbeat_secs
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay_s = reconnect_delay_s

        self.connection_id: Optional[str] = None
        self.online: Set[str] = set()
        self.connected = asyncio.Event()
        self._ws: Optional[ClientConnection] = None
        self._closing = False

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        attempt = 0
        while not self._closing:
            try:
                async with connect(with_token(self.url, self.token)) as ws:
                    attempt = 0
                    await self._serve(ws)
            except InvalidStatus as exc:
                if exc.response.status_code == 401:
                    raise Unauthorized("handshake rejected; fetch a fresh token")
                log.warning("Handshake failed: HTTP %d", exc.response.status_code)
            except (OSError, ConnectionClosed, asyncio.TimeoutError) as exc:
                log.warning("Connection lost: %s", exc)

            if self._closing:
                break
            attempt += 1
            if attempt > self.reconnect_attempts:
                raise ConnectionError(f"gave up after {self.reconnect_attempts} reconnect attempts")
            log.info("Reconnecting in %.1fs (attempt %d/%d)", self.reconnect_delay_s, attempt, self.reconnect_attempts)
            await asyncio.sleep(self.reconnect_delay_s)

    async def _serve(self, ws: ClientConnection) -> None:
        self._ws = ws
        heartbeat = asyncio.create_task(self._heartbeat_loop(ws), name="heartbeat")
        try:
            await self._full_refresh()
            self.connected.set()
            async for raw in ws:
                self._handle_frame(raw)
        finally:
            self.connected.clear()
            self._ws = None
            self.connection_id = None
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _full_refresh(self) -> None:
        if self.refresh is None:
            return
        try:
            docs = await self.refresh()
        except Exception:
            log.exception("Refresh after connect failed")
            return
        self.view.replace_all(docs)
        log.info("Refreshed %d task(s)", len(docs))

    async def _heartbeat_loop(self, ws: ClientConnection) -> None:
        frame = proto.encode(proto.Heartbeat())
        while True:
            await asyncio.sleep(self.heartbeat_secs)
            try:
                await ws.send(frame)
            except ConnectionClosed:
                return

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self.connected.wait(), timeout)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _handle_frame(self, raw: Any) -> None:
        try:
            event = proto.parse_server_event(raw)
        except ValueError as exc:
            log.warning("Ignoring malformed frame: %s", exc)
            return

        if isinstance(event, proto.Connected):
            self.connection_id = event.payload.connection_id
        elif isinstance(event, proto.PresenceChanged):
            if event.type == proto.USER_ONLINE:
                self.online.add(event.payload.user_id)
            else:
                self.online.discard(event.payload.user_id)
        elif isinstance(event, proto.PresenceSnapshot):
            self.online = {item.user_id for item in event.payload.users}
        elif isinstance(event, proto.ErrorFrame):
            log.warning("Server error %s: %s", event.payload.code, event.payload.detail)
        else:
            self.view.receive(event)

        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception:
                log.exception("on_event callback failed for %s", event.type)

    # ------------------------------------------------------------------
    # Outbound (advisory)
    # ------------------------------------------------------------------

    async def send(self, message: BaseModel) -> None:
        if self._ws is None:
            raise ConnectionError("not connected")
        await self._ws.send(proto.encode(message))

    async def join_room(self, room_id: str) -> None:
        await self.send(proto.RoomRequest(type="room:join", payload=proto.RoomRef(room_id=room_id)))

    async def leave_room(self, room_id: str) -> None:
        await self.send(proto.RoomRequest(type="room:leave", payload=proto.RoomRef(room_id=room_id)))

    async def typing(self, task_id: str, active: bool = True) -> None:
        type_ = "typing:start" if active else "typing:stop"
        await self.send(proto.TypingRequest(type=type_, payload=proto.TaskRef(task_id=task_id)))

    async def set_status(self, status: str) -> None:
        await self.send(proto.SetStatus(payload=proto.StatusRequest(status=status)))

    async def list_presence(self) -> None:
        await self.send(proto.ListPresence())

    async def send_private(self, to_user_id: str, message: str) -> None:
        await self.send(proto.SendPrivate(payload=proto.PrivateText(to_user_id=to_user_id, message=message)))


__all__ = ["ClientSession", "with_token"]
