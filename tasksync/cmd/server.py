from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tasksync.server.runtime import ServerRuntime

log = logging.getLogger("tasksync.cmd.server")


def load_config(path: Path, *, listen: Optional[str] = None, db_path: Optional[str] = None) -> Dict[str, Any]:
    """YAML file first, then command-line overrides."""

    config = yaml.safe_load(path.read_text()) or {}
    if not isinstance(config, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    if listen:
        config["listen"] = listen
    if db_path:
        config["db_path"] = db_path
    return config


async def serve_forever(config: Dict[str, Any]) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            break

    log.info("Server running on port %d. Press Ctrl+C to stop.", runtime.bound_port)
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="tasksync real-time collaboration server")
    parser.add_argument("--config", required=True, help="Path to server YAML config")
    parser.add_argument("--listen", help="host:port, overrides the config")
    parser.add_argument("--db", dest="db_path", help="SQLite path, overrides the config")
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ...")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_config(Path(args.config), listen=args.listen, db_path=args.db_path)
    asyncio.run(serve_forever(config))


if __name__ == "__main__":
    main()
