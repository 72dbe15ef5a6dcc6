from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from signaling.protocol import DEFAULT_RELAY_HOST, DEFAULT_RELAY_PORT

from relay.relay_server import RelayServer
from relay.room_manager import DEPARTURE_GRACE_SECONDS, MAX_ROOM_OCCUPANTS, RoomManager

logger = logging.getLogger(__name__)


async def main() -> None:
    parser = argparse.ArgumentParser(description="Two-party WebRTC signaling relay")
    parser.add_argument("--host", default=DEFAULT_RELAY_HOST, help="Host/IP to bind the relay")
    parser.add_argument("--port", type=int, default=DEFAULT_RELAY_PORT, help="WebSocket port")
    parser.add_argument(
        "--departure-grace",
        type=float,
        default=DEPARTURE_GRACE_SECONDS,
        help="Seconds a dropped caller keeps its room slot before user-left is sent (0 disables)",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    args = parser.parse_args()

    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )

    rooms = RoomManager(max_occupants=MAX_ROOM_OCCUPANTS, departure_grace=args.departure_grace)
    relay = RelayServer(args.host, args.port, rooms)

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Not available on Windows event loops; KeyboardInterrupt still stops us.
            pass

    await relay.start()
    await stop_event.wait()

    try:
        await relay.stop()
    except Exception:
        logger.exception("Error stopping signaling relay")

    snapshot = await rooms.snapshot()
    logger.info("Shutdown complete (%s event(s) recorded)", len(snapshot["events"]))


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
