from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from tasksync.client.reconcile import Change, TaskView
from tasksync.client.session import ClientSession
from tasksync.core import proto
from tasksync.core.errors import Unauthorized
from tasksync.core.store import Store

log = logging.getLogger("tasksync.cmd.client")


class ClientApp:
    """Line-oriented console client: prints task changes, sends advisory messages."""

    def __init__(self, server_url: str, token: str, user_id: Optional[str], db_path: Optional[str]) -> None:
        self.user_id = user_id
        self.store = Store(db_path) if db_path else None
        self.view = TaskView(fetch=self._fetch if self.store else None, listener=self._on_change)
        self.session = ClientSession(
            server_url,
            token,
            self.view,
            refresh=self._refresh if self.store else None,
            on_event=self._on_event,
        )
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        if self.store is not None:
            await self.store.open()
        runner = asyncio.create_task(self.session.run(), name="session")
        try:
            await self._command_loop(runner)
        finally:
            self.stop_event.set()
            await self.session.close()
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError, ConnectionError):
                await runner
            if self.store is not None:
                await self.store.close()

    # ------------------------------------------------------------------
    # Store-backed refresh (development: the real client calls the HTTP API)
    # ------------------------------------------------------------------

    async def _refresh(self) -> List[Dict[str, Any]]:
        assert self.store is not None
        if not self.user_id:
            return []
        return await self.store.tasks_for_user(self.user_id)

    async def _fetch(self, task_id: str) -> Optional[Dict[str, Any]]:
        assert self.store is not None
        return await self.store.get_task(task_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _command_loop(self, runner: asyncio.Task) -> None:
        loop = asyncio.get_running_loop()
        print("tasksync client ready. Commands: /tasks, /who, /join <task>, /leave <task>, /typing <task>, /status <text>, /msg <user> <text>, /quit")
        while not self.stop_event.is_set() and not runner.done():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                await self._handle_command(line)
            except ConnectionError:
                print("not connected")
        if runner.done() and not runner.cancelled() and runner.exception() is not None:
            exc = runner.exception()
            if isinstance(exc, Unauthorized):
                print(f"Handshake rejected ({exc.reason}); get a fresh token")
            else:
                print(f"Disconnected: {exc}")

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/tasks":
            for doc in self.view.tasks():
                task_id = proto.task_id_of(doc)
                print(f"  {task_id} [{self.view.state_of(task_id)}] {doc.get('title', '')}")
        elif cmd == "/who":
            await self.session.list_presence()
        elif cmd == "/join" and len(parts) == 2:
            await self.session.join_room(parts[1])
        elif cmd == "/leave" and len(parts) == 2:
            await self.session.leave_room(parts[1])
        elif cmd == "/typing" and len(parts) == 2:
            await self.session.typing(parts[1])
        elif cmd == "/status" and len(parts) >= 2:
            await self.session.set_status(line.split(" ", 1)[1])
        elif cmd == "/msg" and len(parts) >= 3:
            await self.session.send_private(parts[1], line.split(" ", 2)[2])
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print("Unknown command")

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _on_change(self, change: Change) -> None:
        title = (change.value or {}).get("title", "")
        note = " (conflict resolved: latest wins)" if change.conflict else ""
        print(f"[{change.kind}] {change.task_id} {title}{note}")

    def _on_event(self, event: BaseModel) -> None:
        if isinstance(event, proto.Connected):
            print(f"connected as {event.payload.user_id} ({event.payload.connection_id})")
        elif isinstance(event, proto.PresenceChanged):
            print(f"[{event.type}] {event.payload.user_id}")
        elif isinstance(event, proto.PresenceSnapshot):
            for item in event.payload.users:
                print(f"  {item.user_id} {item.status or ''}")
        elif isinstance(event, proto.StatusChanged):
            print(f"[status] {event.payload.user_id}: {event.payload.status}")
        elif isinstance(event, proto.Typing):
            print(f"[{event.type}] {event.payload.user_id} on {event.payload.task_id}")
        elif isinstance(event, proto.RoomPeer):
            print(f"[{event.type}] {event.payload.user_id} in {event.payload.room_id}")
        elif isinstance(event, proto.PrivateMessage):
            sender = event.payload.from_user_name or event.payload.from_user_id
            print(f"[dm] {sender}: {event.payload.message}")
        elif isinstance(event, proto.ErrorFrame):
            print(f"ERROR ({event.payload.code}): {event.payload.detail}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="tasksync console client")
    parser.add_argument("--server", required=True, help="ws://host:port of the tasksync server")
    parser.add_argument("--token", required=True, help="Bearer token (see scripts/gen_user.py)")
    parser.add_argument("--user", dest="user_id", default=None, help="Own user id, for refresh from --db")
    parser.add_argument("--db", default=None, help="Read tasks from this store on (re)connect")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = ClientApp(args.server, args.token, args.user_id, args.db)
    await app.run()


if __name__ == "__main__":
    asyncio.run(main())
