from .controller import DeviceController
from .protocol import (
    COMMAND_ERROR,
    COMMAND_SENT,
    BoxCommsError,
    CommandResult,
    ConnectionFailed,
    Endpoint,
    InvalidEndpoint,
    decode_response,
    encode_command,
)
from .status import BoxState, ConnectionState, DeviceStatus, PackageState
from .transport import ProtocolConnection

__all__ = [
    "BoxCommsError",
    "BoxState",
    "COMMAND_ERROR",
    "COMMAND_SENT",
    "CommandResult",
    "ConnectionFailed",
    "ConnectionState",
    "DeviceController",
    "DeviceStatus",
    "Endpoint",
    "InvalidEndpoint",
    "PackageState",
    "ProtocolConnection",
    "decode_response",
    "encode_command",
]
