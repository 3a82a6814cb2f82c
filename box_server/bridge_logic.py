from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from box_server.box_comms.status import DeviceStatus

ACTIONS = ("status", "unlock", "refresh", "connect", "close")


@dataclass(slots=True)
class BridgeRequest:
    action: str
    check_package: bool = False
    address: Optional[str] = None
    port: Optional[Union[int, str]] = None


def _parse_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"'{field_name}' must be boolean")


def parse_request(raw: Union[str, bytes]) -> BridgeRequest:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid_json: {exc}") from exc

    if not isinstance(data, dict):
        raise ValueError("payload must be object")

    action = str(data.get("action", "")).strip().lower()
    if action not in ACTIONS:
        raise ValueError(f"action must be one of {', '.join(ACTIONS)}")

    request = BridgeRequest(action=action)
    if action == "refresh" and "check_package" in data:
        request.check_package = _parse_bool(data["check_package"], "check_package")

    if action == "connect":
        address = data.get("address")
        port = data.get("port")
        if not isinstance(address, str):
            raise ValueError("'address' must be a string")
        if isinstance(port, bool) or not isinstance(port, (int, str)):
            raise ValueError("'port' must be an integer or string")
        request.address = address
        request.port = port

    return request


def status_event(status: DeviceStatus) -> Dict[str, Any]:
    return {"event": "status", "status": status.as_dict()}


def ready_message(status: DeviceStatus) -> Dict[str, Any]:
    return {"ok": True, "message": "box_server ready", "status": status.as_dict()}
