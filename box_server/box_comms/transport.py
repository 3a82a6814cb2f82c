from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Union

import serial

from .protocol import (
    CMD_CONNECT_PROBE,
    COMMAND_ERROR,
    COMMAND_SENT,
    RESPONSE_SIZE,
    CommandResult,
    ConnectionFailed,
    Endpoint,
    decode_response,
    encode_command,
)

logger = logging.getLogger(__name__)

DEFAULT_REPLY_TIMEOUT_S = 2.0

TransportFactory = Callable[..., serial.SerialBase]


@dataclass(slots=True)
class CommandStats:
    commands_sent: int = 0
    send_errors: int = 0
    replies_ok: int = 0
    reply_errors: int = 0


class ProtocolConnection:
    """Framing and deframing of the box's line protocol over one TCP stream.

    The stream is opened through pyserial's ``socket://`` URL handler so the
    handle behaves like any other serial port (timeouts, ``is_open``). There
    is no retry and at most one request in flight; the caller serializes
    access.
    """

    def __init__(
        self,
        timeout_s: float = DEFAULT_REPLY_TIMEOUT_S,
        transport_factory: TransportFactory = serial.serial_for_url,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")

        self.timeout_s = float(timeout_s)
        self.endpoint: Optional[Endpoint] = None

        self._transport_factory = transport_factory
        self._serial: Optional[serial.SerialBase] = None

        self._stats = CommandStats()
        self._stats_lock = threading.Lock()

        self._log_enabled = False

    def open(self, address: str, port: Union[int, str]) -> bool:
        endpoint = Endpoint.parse(address, port)

        if self._serial is not None:
            return False

        try:
            ser = self._transport_factory(
                endpoint.url,
                timeout=self.timeout_s,
                write_timeout=self.timeout_s,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise ConnectionFailed(f"Could not connect to {endpoint}") from exc

        self._serial = ser
        self.endpoint = endpoint
        logger.info("Connected to %s", endpoint)

        # probe reply carries no information
        self.execute_command(CMD_CONNECT_PROBE)
        return True

    def close(self) -> None:
        ser = self._serial
        if ser is None:
            return
        try:
            ser.close()
        finally:
            self._serial = None
        logger.info("Closed connection to %s", self.endpoint)

    def is_connected(self) -> bool:
        ser = self._serial
        return ser is not None and bool(ser.is_open)

    def execute_command(self, command: str, expect_response: bool = True) -> CommandResult:
        ser = self._serial
        if ser is None:
            return COMMAND_ERROR

        frame = encode_command(command)
        try:
            if expect_response:
                # drop late bytes of an earlier timed-out reply
                ser.reset_input_buffer()
            ser.write(frame)
            with self._stats_lock:
                self._stats.commands_sent += 1
            if self._log_enabled:
                print(f"[TX] {frame.hex(' ')}")
        except (serial.SerialException, OSError) as exc:
            with self._stats_lock:
                self._stats.send_errors += 1
            logger.debug("Send of %r failed: %s", command, exc)
            if not expect_response:
                return COMMAND_SENT
            return COMMAND_ERROR

        if not expect_response:
            return COMMAND_SENT

        try:
            reply = ser.read(RESPONSE_SIZE)
            if self._log_enabled:
                print(f"[RX] {bytes(reply).hex(' ')}")
            payload = decode_response(bytes(reply))
        except (serial.SerialException, OSError, ValueError) as exc:
            with self._stats_lock:
                self._stats.reply_errors += 1
            logger.debug("Reply to %r failed: %s", command, exc)
            return COMMAND_ERROR

        with self._stats_lock:
            self._stats.replies_ok += 1
        return CommandResult(payload=payload)

    def set_log_enabled(self, enabled: bool) -> None:
        self._log_enabled = bool(enabled)

    def get_stats(self) -> CommandStats:
        with self._stats_lock:
            return CommandStats(
                commands_sent=self._stats.commands_sent,
                send_errors=self._stats.send_errors,
                replies_ok=self._stats.replies_ok,
                reply_errors=self._stats.reply_errors,
            )
