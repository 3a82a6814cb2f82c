from __future__ import annotations

import argparse
import asyncio
import json
import logging
import threading
from typing import Any, Dict, Optional, Set

import websockets

from box_server.box_comms.controller import DEFAULT_POLL_INTERVAL_S, DeviceController
from box_server.box_comms.status import DeviceStatus
from box_server.box_comms.transport import DEFAULT_REPLY_TIMEOUT_S

from .bridge_logic import parse_request, ready_message, status_event

logger = logging.getLogger(__name__)


class StatusBridge:
    """WebSocket front for a :class:`DeviceController`.

    Every refresh notification is pushed to all connected clients; clients
    send JSON requests (status, unlock, refresh, connect, close).
    """

    def __init__(self, controller: DeviceController, host: str = "0.0.0.0", port: int = 8765) -> None:
        self._controller = controller
        self._host = host
        self._port = int(port)

        self._ws_loop: Optional[asyncio.AbstractEventLoop] = None
        self._ws_thread: Optional[threading.Thread] = None
        self._ws_server = None
        self._clients: Set[Any] = set()
        self._ready = threading.Event()
        self._start_error: Optional[BaseException] = None
        self._unsubscribe = None

    @property
    def port(self) -> int:
        """Port actually bound; differs from the requested one when that was 0."""
        if self._ws_server is None:
            return self._port
        return self._ws_server.sockets[0].getsockname()[1]

    def start(self) -> None:
        if self._ws_thread is not None:
            return
        self._ready.clear()
        self._start_error = None
        self._unsubscribe = self._controller.subscribe(self._on_status)
        self._ws_loop = asyncio.new_event_loop()
        self._ws_thread = threading.Thread(target=self._ws_thread_main, daemon=True, name="box-ws")
        self._ws_thread.start()
        if not self._ready.wait(timeout=5.0):
            self.stop()
            raise RuntimeError("WebSocket server did not start in time")

        if self._start_error is not None:
            error = self._start_error
            self.stop()
            raise error

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        loop = self._ws_loop
        if loop is not None and loop.is_running():
            server = self._ws_server
            if server is not None:
                async def _close_ws():
                    server.close()
                    await server.wait_closed()

                fut = asyncio.run_coroutine_threadsafe(_close_ws(), loop)
                try:
                    fut.result(timeout=1.0)
                except Exception:
                    logger.warning("WebSocket server did not close cleanly")
            loop.call_soon_threadsafe(loop.stop)
        if self._ws_thread is not None:
            self._ws_thread.join(timeout=1.0)
            if not self._ws_thread.is_alive() and loop is not None:
                loop.close()
            self._ws_thread = None
        self._ws_loop = None
        self._ws_server = None

    def handle_raw(self, raw) -> Dict[str, Any]:
        try:
            request = parse_request(raw)
        except ValueError as exc:
            return {"ok": False, "error": str(exc)}

        controller = self._controller
        if request.action == "unlock":
            controller.unlock()
        elif request.action == "refresh":
            controller.refresh(request.check_package)
        elif request.action == "close":
            controller.close()
        elif request.action == "connect":
            if not controller.connect(request.address, request.port):
                return {"ok": False, "error": "could not connect", "status": controller.status.as_dict()}

        return {"ok": True, "status": controller.status.as_dict()}

    def _on_status(self, status: DeviceStatus) -> None:
        loop = self._ws_loop
        if loop is None or not loop.is_running() or not self._clients:
            return
        message = json.dumps(status_event(status), ensure_ascii=True)
        asyncio.run_coroutine_threadsafe(self._broadcast(message), loop)

    async def _broadcast(self, message: str) -> None:
        for websocket in list(self._clients):
            try:
                await websocket.send(message)
            except websockets.ConnectionClosed:
                self._clients.discard(websocket)

    def _ws_thread_main(self) -> None:
        assert self._ws_loop is not None
        asyncio.set_event_loop(self._ws_loop)
        try:
            self._ws_loop.run_until_complete(self._ws_start())
        except Exception as exc:
            # re-raised by start() on the caller's thread
            self._start_error = exc
            self._ready.set()
            return
        # ready only once the loop runs, so stop() can always reach it
        self._ws_loop.call_soon(self._ready.set)
        self._ws_loop.run_forever()

    async def _ws_start(self) -> None:
        self._ws_server = await websockets.serve(self._ws_handler, self._host, self._port)
        logger.info("WebSocket server listening on ws://%s:%s", self._host, self._port)

    async def _ws_handler(self, websocket) -> None:
        self._clients.add(websocket)
        try:
            ready = ready_message(self._controller.status)
            await websocket.send(json.dumps(ready, ensure_ascii=True))
            async for raw in websocket:
                loop = asyncio.get_running_loop()
                # controller calls block on device I/O
                response = await loop.run_in_executor(None, self.handle_raw, raw)
                await websocket.send(json.dumps(response, ensure_ascii=True))
        except websockets.ConnectionClosed:
            pass
        finally:
            self._clients.discard(websocket)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WebSocket status bridge for the package box")
    parser.add_argument("--host", default=None, help="Box IPv4 address")
    parser.add_argument("--port", default=None, help="Box TCP port")
    parser.add_argument("--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL_S)
    parser.add_argument("--timeout", type=float, default=DEFAULT_REPLY_TIMEOUT_S)
    parser.add_argument("--ws-host", default="0.0.0.0", help="WebSocket bind address (default: 0.0.0.0)")
    parser.add_argument("--ws-port", type=int, default=8765, help="WebSocket port (default: 8765)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    controller = DeviceController(poll_interval_s=args.poll_interval, timeout_s=args.timeout)
    bridge = StatusBridge(controller, host=args.ws_host, port=args.ws_port)
    try:
        if args.host and args.port is not None and not controller.connect(args.host, args.port):
            logger.warning("Starting without a box connection")
        bridge.start()
        logger.info(
            "box_server ready (box=%s:%s, ws=%s:%s)", args.host, args.port, args.ws_host, args.ws_port
        )
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        bridge.stop()
        controller.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
