"""Launch a local signaling relay plus the two callers of one room."""
from __future__ import annotations

import argparse
import atexit
import signal
import subprocess
import sys
import time
from pathlib import Path

ProcessRecord = tuple[str, subprocess.Popen]

PROCESSES: list[ProcessRecord] = []


def _register_process(name: str, proc: subprocess.Popen) -> None:
    PROCESSES.append((name, proc))


def _terminate_process(proc: subprocess.Popen, timeout: float) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()


def _cleanup() -> None:
    while PROCESSES:
        name, proc = PROCESSES.pop()
        try:
            _terminate_process(proc, timeout=5.0)
        except OSError as exc:
            print(f"Could not stop {name}: {exc}", file=sys.stderr)


def _handle_signal(signum: int, frame: object) -> None:  # pragma: no cover - signal runtime
    _cleanup()
    sys.exit(0)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Launch a relay and two callers sharing one room")
    parser.add_argument("--room", default="room42", help="Room both callers use")
    parser.add_argument("--python", default=sys.executable, help="Python interpreter to use for subprocesses")
    parser.add_argument("--relay-host", default="127.0.0.1")
    parser.add_argument("--relay-port", type=int, default=8080)
    parser.add_argument("--ui-start-port", type=int, default=8100, help="Control API port of the first caller")
    parser.add_argument("--no-video", action="store_true", help="Start both callers without a camera")
    parser.add_argument("--no-audio", action="store_true", help="Start both callers without a microphone")
    parser.add_argument("--caller-delay", type=float, default=0.5, help="Delay between starting callers")
    parser.add_argument("--relay-startup-delay", type=float, default=1.0, help="Delay before launching callers")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--workspace", default=str(Path(__file__).resolve().parent.parent), help="Working directory")
    return parser.parse_args()


def _launch_process(name: str, cmd: list[str], cwd: str) -> subprocess.Popen:
    proc = subprocess.Popen(cmd, cwd=cwd)
    _register_process(name, proc)
    return proc


def main() -> None:
    args = _parse_args()
    atexit.register(_cleanup)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle_signal)

    relay_cmd = [
        args.python,
        "-m",
        "relay",
        "--host",
        args.relay_host,
        "--port",
        str(args.relay_port),
        "--log-level",
        args.log_level,
    ]
    print(f"Starting relay: {' '.join(relay_cmd)}")
    _launch_process("relay", relay_cmd, cwd=args.workspace)

    time.sleep(max(args.relay_startup_delay, 0.0))

    relay_url = f"ws://{args.relay_host}:{args.relay_port}"
    for index, role in enumerate(("--create", "--join")):
        ui_port = args.ui_start_port + index
        caller_cmd = [
            args.python,
            "-m",
            "caller",
            relay_url,
            "--room",
            args.room,
            role,
            "--ui-port",
            str(ui_port),
            "--log-level",
            args.log_level,
        ]
        if args.no_video:
            caller_cmd.append("--no-video")
        if args.no_audio:
            caller_cmd.append("--no-audio")
        print(f"Starting caller {role[2:]} in room {args.room} on control port {ui_port}")
        _launch_process(f"caller-{ui_port}", caller_cmd, cwd=args.workspace)
        time.sleep(max(args.caller_delay, 0.0))

    print("All processes started. Press Ctrl+C to stop everything.")

    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        _cleanup()


if __name__ == "__main__":
    main()
