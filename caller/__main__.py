from __future__ import annotations

import argparse
import asyncio
import logging

from signaling.protocol import DEFAULT_RELAY_URL

from .app import CallerApp
from .engine import build_ice_servers
from .media import MediaConstraints
from .states import Role


def main() -> None:
    parser = argparse.ArgumentParser(description="Two-party WebRTC caller")
    parser.add_argument("relay_url", nargs="?", default=DEFAULT_RELAY_URL, help="WebSocket URL of the signaling relay")
    parser.add_argument("--room", help="Room ID to start a call in right away")
    role = parser.add_mutually_exclusive_group()
    role.add_argument("--create", action="store_true", help="Create the room and send the offer (default)")
    role.add_argument("--join", action="store_true", help="Join the room and answer the offer")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local control API")
    parser.add_argument("--ui-port", type=int, default=8100, help="Port for the local control API")
    parser.add_argument("--stun", action="append", default=None, help="STUN server URL (repeatable)")
    parser.add_argument("--turn-url", help="Optional TURN server URL")
    parser.add_argument("--turn-username", help="TURN username")
    parser.add_argument("--turn-credential", help="TURN credential")
    parser.add_argument("--no-video", action="store_true", help="Do not capture the camera")
    parser.add_argument("--no-audio", action="store_true", help="Do not capture the microphone")
    parser.add_argument("--camera-index", type=int, default=0, help="OpenCV camera index")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    try:
        ice_servers = build_ice_servers(
            args.stun,
            turn_url=args.turn_url,
            turn_username=args.turn_username,
            turn_credential=args.turn_credential,
        )
    except ValueError as exc:
        parser.error(str(exc))

    constraints = MediaConstraints(
        audio=not args.no_audio,
        video=not args.no_video,
        camera_index=args.camera_index,
    )
    app = CallerApp(
        args.relay_url,
        constraints=constraints,
        ice_servers=ice_servers,
        auto_room=args.room,
        auto_role=Role.RESPONDER if args.join else Role.INITIATOR,
    )

    try:
        asyncio.run(app.run(host=args.ui_host, port=args.ui_port))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
