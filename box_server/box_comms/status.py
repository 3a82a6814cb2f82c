from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from .protocol import CommandResult


class ConnectionState(str, Enum):
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"


class BoxState(str, Enum):
    CLOSED = "Closed"
    OPEN = "Open"
    UNKNOWN = "Unknown"


class PackageState(str, Enum):
    PRESENT = "Present"
    EMPTY = "Empty"
    UNKNOWN = "Unknown"


BOX_REPLIES = {
    "CLS": BoxState.CLOSED,
    "OPN": BoxState.OPEN,
}

PACKAGE_REPLIES = {
    "YES": PackageState.PRESENT,
    "NO": PackageState.EMPTY,
}


def box_state_from_reply(result: CommandResult) -> Tuple[BoxState, Optional[str]]:
    """Map a reply to a box state; the detail is the raw reply text, None when the reply was understood."""
    if result.ok and result.payload in BOX_REPLIES:
        return BOX_REPLIES[result.payload], None
    return BoxState.UNKNOWN, str(result)


def package_state_from_reply(result: CommandResult) -> Tuple[PackageState, Optional[str]]:
    if result.ok and result.payload in PACKAGE_REPLIES:
        return PACKAGE_REPLIES[result.payload], None
    return PackageState.UNKNOWN, str(result)


@dataclass(slots=True)
class DeviceStatus:
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    box_state: BoxState = BoxState.UNKNOWN
    box_detail: Optional[str] = None
    package_state: PackageState = PackageState.UNKNOWN
    package_detail: Optional[str] = None
    refreshed_monotonic_s: Optional[float] = None

    @property
    def connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    @property
    def box_text(self) -> str:
        # unexpected replies are shown as-is, blank ones included
        if self.box_state is BoxState.UNKNOWN and self.box_detail is not None:
            return self.box_detail
        return self.box_state.value

    @property
    def package_text(self) -> str:
        if self.package_state is PackageState.UNKNOWN and self.package_detail is not None:
            return self.package_detail
        return self.package_state.value

    def copy(self) -> "DeviceStatus":
        return replace(self)

    def as_dict(self) -> dict:
        return {
            "connection": self.connection_state.value,
            "connected": self.connected,
            "box": self.box_text,
            "box_state": self.box_state.value,
            "box_detail": self.box_detail,
            "package": self.package_text,
            "package_state": self.package_state.value,
            "package_detail": self.package_detail,
            "refreshed_monotonic_s": self.refreshed_monotonic_s,
        }
