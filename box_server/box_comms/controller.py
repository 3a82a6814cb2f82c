from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, List, Optional, Union

from .protocol import (
    CMD_BOX_STATE,
    CMD_PACKAGE_STATE,
    CMD_UNLOCK,
    ConnectionFailed,
    InvalidEndpoint,
)
from .status import (
    BoxState,
    ConnectionState,
    DeviceStatus,
    PackageState,
    box_state_from_reply,
    package_state_from_reply,
)
from .transport import DEFAULT_REPLY_TIMEOUT_S, ProtocolConnection

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 1.0

StatusCallback = Callable[[DeviceStatus], None]

_STOP = object()


class DeviceController:
    """Turns box commands into status and keeps that status fresh.

    Every command runs on one worker thread that owns the connection, so a
    poll cycle and a user command never interleave on the socket. Public
    methods submit work to that thread and block until it is done. Observers
    registered with :meth:`subscribe` are called on the worker thread with a
    copy of the status once per refresh.
    """

    def __init__(
        self,
        connection: Optional[ProtocolConnection] = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        timeout_s: float = DEFAULT_REPLY_TIMEOUT_S,
    ) -> None:
        if poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")

        self.poll_interval_s = float(poll_interval_s)
        self.connection = connection if connection is not None else ProtocolConnection(timeout_s=timeout_s)

        self._status = DeviceStatus()
        self._status_lock = threading.Lock()

        self._observers: List[StatusCallback] = []
        self._observers_lock = threading.Lock()

        self._jobs: "queue.Queue[Any]" = queue.Queue()
        self._submit_lock = threading.Lock()
        self._shut_down = False
        self._worker = threading.Thread(target=self._worker_loop, name="box-worker", daemon=True)
        self._worker.start()

        self._poll_stop = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    def __enter__(self) -> "DeviceController":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    @property
    def status(self) -> DeviceStatus:
        with self._status_lock:
            return self._status.copy()

    @property
    def is_polling(self) -> bool:
        thread = self._poll_thread
        return thread is not None and thread.is_alive() and not self._poll_stop.is_set()

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        with self._observers_lock:
            self._observers.append(callback)

        def unsubscribe() -> None:
            with self._observers_lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    def connect(self, address: str, port: Union[int, str]) -> bool:
        return self._call(self._connect, address, port)

    def close(self) -> None:
        self._stop_polling()
        self._call(self._close)

    def refresh(self, check_package: bool) -> None:
        self._call(self._refresh, bool(check_package))

    def unlock(self) -> None:
        self._call(self._unlock)

    def query_connection_state(self) -> bool:
        return self._call(self._query_connection_state)

    def query_box_state(self) -> BoxState:
        return self._call(self._query_box_state)

    def query_package_state(self) -> PackageState:
        return self._call(self._query_package_state)

    def shutdown(self) -> None:
        if self._shut_down:
            return
        self.close()
        with self._submit_lock:
            if self._shut_down:
                return
            self._shut_down = True
            self._jobs.put(_STOP)
        if threading.current_thread() is not self._worker:
            self._worker.join(timeout=1.5)

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        if threading.current_thread() is self._worker:
            return fn(*args)

        future: Future = Future()
        # nothing may be queued behind _STOP
        with self._submit_lock:
            if self._shut_down:
                raise RuntimeError("controller is shut down")
            self._jobs.put((future, fn, args))
        return future.result()

    def _worker_loop(self) -> None:
        while True:
            job = self._jobs.get()
            if job is _STOP:
                break
            future, fn, args = job
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args)
            except BaseException as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

    def _connect(self, address: str, port: Union[int, str]) -> bool:
        if self.connection.is_connected():
            return False

        try:
            opened = self.connection.open(address, port)
        except (InvalidEndpoint, ConnectionFailed) as exc:
            logger.warning("Could not connect because: %s", exc)
            return False
        if not opened:
            return False

        self._refresh(True)
        self._start_polling()
        return self.connection.is_connected()

    def _close(self) -> None:
        if self.connection.is_connected():
            self.connection.close()
        self._query_connection_state()
        self._notify()

    def _refresh(self, check_package: bool) -> None:
        self._query_connection_state()
        self._query_box_state()
        if check_package:
            self._query_package_state()

        with self._status_lock:
            self._status.refreshed_monotonic_s = time.monotonic()
        self._notify()

    def _unlock(self) -> None:
        self.connection.execute_command(CMD_UNLOCK, expect_response=False)
        self._refresh(False)

    def _query_connection_state(self) -> bool:
        connected = self.connection.is_connected()
        with self._status_lock:
            self._status.connection_state = (
                ConnectionState.CONNECTED if connected else ConnectionState.DISCONNECTED
            )
        return connected

    def _query_box_state(self) -> BoxState:
        state, detail = box_state_from_reply(self.connection.execute_command(CMD_BOX_STATE))
        if detail is not None:
            logger.debug("Unexpected box state reply: %r", detail)
        with self._status_lock:
            self._status.box_state = state
            self._status.box_detail = detail
        return state

    def _query_package_state(self) -> PackageState:
        state, detail = package_state_from_reply(self.connection.execute_command(CMD_PACKAGE_STATE))
        if detail is not None:
            logger.debug("Unexpected package state reply: %r", detail)
        with self._status_lock:
            self._status.package_state = state
            self._status.package_detail = detail
        return state

    def _notify(self) -> None:
        snapshot = self.status
        with self._observers_lock:
            observers = list(self._observers)
        for callback in observers:
            try:
                callback(snapshot.copy())
            except Exception:
                logger.exception("Status observer %r failed", callback)

    def _start_polling(self) -> None:
        if self.is_polling:
            return
        # a fresh event per poller; a stopped one still finishing its cycle stays stopped
        stop = threading.Event()
        thread = threading.Thread(target=self._poll_loop, args=(stop,), name="box-poll", daemon=True)
        self._poll_stop = stop
        self._poll_thread = thread
        thread.start()

    def _stop_polling(self) -> None:
        self._poll_stop.set()
        thread = self._poll_thread
        if thread is None:
            return
        current = threading.current_thread()
        # the poller may be waiting on the job the worker is running right now
        if current is thread or current is self._worker:
            return
        thread.join(timeout=self.poll_interval_s + self.connection.timeout_s * 3)
        if not thread.is_alive():
            self._poll_thread = None

    def _poll_loop(self, stop: threading.Event) -> None:
        next_tick = time.monotonic() + self.poll_interval_s
        while not stop.wait(max(0.0, next_tick - time.monotonic())):
            try:
                self._call(self._refresh, True)
            except RuntimeError:
                break
            except Exception:
                logger.exception("Poll cycle failed")
            next_tick += self.poll_interval_s
            # skip ticks missed while a slow device stalled the worker
            now = time.monotonic()
            if next_tick < now:
                next_tick = now
