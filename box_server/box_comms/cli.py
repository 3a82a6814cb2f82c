from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .controller import DEFAULT_POLL_INTERVAL_S, DeviceController
from .status import DeviceStatus
from .transport import DEFAULT_REPLY_TIMEOUT_S


HELP_TEXT = """Commands:
  help
  status
  connect <ip> <port>
  close
  unlock
  refresh [full]
  watch on|off
  log on|off
  quit
"""


class SessionLogger:
    def __init__(self, path: Optional[str]) -> None:
        self._path = Path(path).expanduser() if path else None
        self._file = None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._path.open("a", encoding="utf-8")

    def write(self, event: str, command: str, status: Optional[dict], extra: Optional[dict] = None) -> None:
        if self._file is None:
            return
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "command": command,
            "status": status,
            "extra": extra or {},
        }
        self._file.write(json.dumps(payload, ensure_ascii=True) + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


def _parse_on_off(raw: str) -> bool:
    if raw == "on":
        return True
    if raw == "off":
        return False
    raise ValueError("expected 'on' or 'off'")


def format_status(status: DeviceStatus) -> str:
    return (
        "status: "
        f"connection={status.connection_state.value} "
        f"box={status.box_text} "
        f"package={status.package_text}"
    )


def dispatch(controller: DeviceController, parts: List[str], watch_state: dict) -> bool:
    """Run one REPL command. Returns False when the session should end."""
    cmd = parts[0].lower()

    if cmd == "help":
        print(HELP_TEXT, end="")

    elif cmd == "status":
        stats = controller.connection.get_stats()
        print(format_status(controller.status))
        print(
            "stats: "
            f"sent={stats.commands_sent} send_err={stats.send_errors} "
            f"rx_ok={stats.replies_ok} rx_err={stats.reply_errors}"
        )

    elif cmd == "connect":
        if len(parts) != 3:
            raise ValueError("usage: connect <ip> <port>")
        if controller.connect(parts[1], parts[2]):
            print(f"connected to {parts[1]}:{parts[2]}")
        else:
            print("could not connect")

    elif cmd == "close":
        controller.close()
        print("closed")

    elif cmd == "unlock":
        controller.unlock()
        print(format_status(controller.status))

    elif cmd == "refresh":
        if len(parts) > 2 or (len(parts) == 2 and parts[1].lower() != "full"):
            raise ValueError("usage: refresh [full]")
        controller.refresh(check_package=len(parts) == 2)
        print(format_status(controller.status))

    elif cmd == "watch":
        if len(parts) != 2:
            raise ValueError("usage: watch on|off")
        watch_state["watch"] = _parse_on_off(parts[1].lower())
        print(f"watch={'on' if watch_state['watch'] else 'off'}")

    elif cmd == "log":
        if len(parts) != 2:
            raise ValueError("usage: log on|off")
        enabled = _parse_on_off(parts[1].lower())
        controller.connection.set_log_enabled(enabled)
        print(f"log={'on' if enabled else 'off'}")

    elif cmd == "quit":
        print("exiting...")
        return False

    else:
        print("unknown command. try: help")

    return True


def run_cli(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    controller = DeviceController(poll_interval_s=args.poll_interval, timeout_s=args.timeout)
    logger = SessionLogger(args.log_file)

    watch_state = {"watch": False}

    def _on_refresh(status: DeviceStatus) -> None:
        if watch_state.get("watch", False):
            print(format_status(status))

    controller.subscribe(_on_refresh)

    try:
        if args.host and args.port is not None:
            if controller.connect(args.host, args.port):
                print(f"connected to {args.host}:{args.port}")
            else:
                print("could not connect")
        print("Package box client ready. Type 'help' for commands.")

        while True:
            try:
                raw = input("box> ").strip()
            except EOFError:
                raw = "quit"

            if not raw:
                continue

            try:
                keep_going = dispatch(controller, raw.split(), watch_state)
            except ValueError as exc:
                print(f"error: {exc}")
                continue

            logger.write(event="command", command=raw, status=controller.status.as_dict())
            if not keep_going:
                break

    except KeyboardInterrupt:
        print("\ninterrupted by user")

    finally:
        controller.shutdown()
        logger.close()

    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remote control client for the package box")
    parser.add_argument("--host", default=None, help="Box IPv4 address; connects on start together with --port")
    parser.add_argument("--port", default=None, help="Box TCP port")
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL_S,
        help=f"Seconds between status polls (default: {DEFAULT_POLL_INTERVAL_S})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_REPLY_TIMEOUT_S,
        help=f"Seconds to wait for a reply (default: {DEFAULT_REPLY_TIMEOUT_S})",
    )
    parser.add_argument("--log-file", default=None, help="Optional path for a JSONL session log")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser
