from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

CMD_CONNECT_PROBE = "c"
CMD_UNLOCK = "u"
CMD_BOX_STATE = "s"
CMD_PACKAGE_STATE = "p"

FRAME_TERMINATOR = b">"
RESPONSE_SIZE = 4
PAYLOAD_SIZE = RESPONSE_SIZE - 1

ERROR_TEXT = "error"
SENT_TEXT = "Success"

PORT_MIN = 0
PORT_MAX = 65535

_OCTET = r"(25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)"
_IPV4_RE = re.compile(rf"{_OCTET}(\.{_OCTET}){{3}}")
_PORT_RE = re.compile(r"[0-9]+")


class BoxCommsError(Exception):
    pass


class InvalidEndpoint(BoxCommsError, ValueError):
    pass


class ConnectionFailed(BoxCommsError):
    pass


@dataclass(frozen=True, slots=True)
class CommandResult:
    payload: str = ""
    error: bool = False

    @property
    def ok(self) -> bool:
        return not self.error

    def __str__(self) -> str:
        return ERROR_TEXT if self.error else self.payload


COMMAND_ERROR = CommandResult(error=True)
COMMAND_SENT = CommandResult(payload=SENT_TEXT)


def is_valid_address(address: object) -> bool:
    if not isinstance(address, str) or not address:
        return False
    return _IPV4_RE.fullmatch(address) is not None


def parse_port(port: Union[int, str]) -> int:
    if isinstance(port, bool):
        raise InvalidEndpoint(f"Invalid port: {port!r}")
    if isinstance(port, int):
        value = port
    elif isinstance(port, str) and _PORT_RE.fullmatch(port.strip()):
        value = int(port.strip())
    else:
        raise InvalidEndpoint(f"Invalid port: {port!r}")

    if not PORT_MIN <= value <= PORT_MAX:
        raise InvalidEndpoint(f"Port out of range: {value}")
    return value


@dataclass(frozen=True, slots=True)
class Endpoint:
    address: str
    port: int

    @classmethod
    def parse(cls, address: str, port: Union[int, str]) -> "Endpoint":
        if not is_valid_address(address):
            raise InvalidEndpoint(f"Invalid IP address: {address!r}")
        return cls(address=address, port=parse_port(port))

    @property
    def url(self) -> str:
        return f"socket://{self.address}:{self.port}"

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


def encode_command(command: str) -> bytes:
    if not command:
        raise ValueError("command must not be empty")
    return command.encode("ascii") + FRAME_TERMINATOR


def decode_response(frame: bytes) -> str:
    """Return the trimmed 3-character payload of a 4-byte reply.

    The last byte is the device's frame terminator and is dropped whatever
    its value is.
    """
    if len(frame) != RESPONSE_SIZE:
        raise ValueError(f"Invalid reply length: {len(frame)}")
    return frame[:PAYLOAD_SIZE].decode("ascii").strip()
