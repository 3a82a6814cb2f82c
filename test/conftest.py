from typing import Dict, List, Optional

import pytest


class FakeSerial:
    """Stands in for the pyserial socket handle; replies are keyed by command letter."""

    def __init__(self, url: str, replies: Optional[Dict[str, bytes]] = None) -> None:
        self.url = url
        self.replies = dict(replies or {})
        self.written: List[bytes] = []
        self.is_open = True
        self.read_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self._pending = b""

    @property
    def commands(self) -> List[str]:
        return [frame[:-1].decode("ascii") for frame in self.written]

    def write(self, data: bytes) -> int:
        if self.write_error is not None:
            raise self.write_error
        frame = bytes(data)
        self.written.append(frame)
        self._pending += self.replies.get(frame[:-1].decode("ascii"), b"")
        return len(frame)

    def read(self, size: int) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        out, self._pending = self._pending[:size], self._pending[size:]
        return out

    def reset_input_buffer(self) -> None:
        self._pending = b""

    def close(self) -> None:
        self.is_open = False


class FakeFactory:
    def __init__(self, replies: Optional[Dict[str, bytes]] = None, error: Optional[Exception] = None) -> None:
        self.replies = dict(replies or {})
        self.error = error
        self.calls: List[tuple] = []
        self.instances: List[FakeSerial] = []

    def __call__(self, url: str, **kwargs) -> FakeSerial:
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        ser = FakeSerial(url, self.replies)
        self.instances.append(ser)
        return ser

    @property
    def serial(self) -> FakeSerial:
        return self.instances[-1]


DEFAULT_REPLIES = {
    "c": b"OK \n",
    "s": b"CLS\n",
    "p": b"YES\n",
}


@pytest.fixture
def make_factory():
    def _make(replies: Optional[Dict[str, bytes]] = None, error: Optional[Exception] = None) -> FakeFactory:
        return FakeFactory(DEFAULT_REPLIES if replies is None else replies, error)

    return _make
