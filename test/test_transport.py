import socket
import socketserver
import threading

import pytest
import serial

from box_server.box_comms.protocol import COMMAND_ERROR, COMMAND_SENT, ConnectionFailed, InvalidEndpoint
from box_server.box_comms.transport import ProtocolConnection


@pytest.mark.parametrize("address", ["", "10.0.0", "10.0.0.256", "10.0.0.1.5"])
def test_open_invalid_address_never_connects(make_factory, address: str) -> None:
    factory = make_factory()
    conn = ProtocolConnection(transport_factory=factory)

    with pytest.raises(InvalidEndpoint):
        conn.open(address, 23)

    assert factory.calls == []
    assert conn.is_connected() is False


@pytest.mark.parametrize("port", [-1, 65536, "x23", ""])
def test_open_invalid_port_never_connects(make_factory, port) -> None:
    factory = make_factory()
    conn = ProtocolConnection(transport_factory=factory)

    with pytest.raises(InvalidEndpoint):
        conn.open("10.0.0.1", port)

    assert factory.calls == []


def test_open_sends_probe_and_uses_socket_url(make_factory) -> None:
    factory = make_factory()
    conn = ProtocolConnection(timeout_s=0.5, transport_factory=factory)

    assert conn.open("192.168.4.1", "23") is True

    url, kwargs = factory.calls[0]
    assert url == "socket://192.168.4.1:23"
    assert kwargs["timeout"] == 0.5
    assert factory.serial.commands == ["c"]
    assert conn.is_connected() is True


def test_open_twice_does_not_reconnect(make_factory) -> None:
    factory = make_factory()
    conn = ProtocolConnection(transport_factory=factory)

    assert conn.open("192.168.4.1", 23) is True
    assert conn.open("192.168.4.1", 23) is False
    assert len(factory.calls) == 1


def test_open_transport_failure_raises_connection_failed(make_factory) -> None:
    factory = make_factory(error=serial.SerialException("could not open port"))
    conn = ProtocolConnection(transport_factory=factory)

    with pytest.raises(ConnectionFailed):
        conn.open("192.168.4.1", 23)

    assert conn.is_connected() is False


def test_execute_command_decodes_reply(make_factory) -> None:
    factory = make_factory({"s": b"OPN\n", "p": b"NO \n"})
    conn = ProtocolConnection(transport_factory=factory)
    conn.open("192.168.4.1", 23)

    assert conn.execute_command("s").payload == "OPN"
    assert conn.execute_command("p").payload == "NO"
    assert factory.serial.written[1:] == [b"s>", b"p>"]


def test_execute_command_short_read_is_error(make_factory) -> None:
    factory = make_factory({"s": b"CL"})
    conn = ProtocolConnection(transport_factory=factory)
    conn.open("192.168.4.1", 23)

    assert conn.execute_command("s") is COMMAND_ERROR
    assert conn.is_connected() is True


def test_execute_command_read_exception_is_error(make_factory) -> None:
    factory = make_factory()
    conn = ProtocolConnection(transport_factory=factory)
    conn.open("192.168.4.1", 23)
    factory.serial.read_error = serial.SerialException("socket disconnected")

    assert conn.execute_command("s") is COMMAND_ERROR
    assert conn.is_connected() is True
    assert conn.get_stats().reply_errors == 1


def test_execute_command_without_connection_is_error() -> None:
    conn = ProtocolConnection(transport_factory=lambda url, **kwargs: pytest.fail("must not connect"))

    assert conn.execute_command("s") is COMMAND_ERROR
    assert conn.execute_command("u", expect_response=False) is COMMAND_ERROR


def test_fire_and_forget_reports_success_even_if_send_fails(make_factory) -> None:
    factory = make_factory()
    conn = ProtocolConnection(transport_factory=factory)
    conn.open("192.168.4.1", 23)

    assert conn.execute_command("u", expect_response=False) is COMMAND_SENT
    assert factory.serial.commands[-1] == "u"

    factory.serial.write_error = serial.SerialTimeoutException("write timeout")
    assert conn.execute_command("u", expect_response=False) is COMMAND_SENT
    assert conn.execute_command("s") is COMMAND_ERROR

    stats = conn.get_stats()
    assert stats.send_errors == 2
    assert conn.is_connected() is True


def test_close_allows_fresh_open(make_factory) -> None:
    factory = make_factory()
    conn = ProtocolConnection(transport_factory=factory)
    conn.open("192.168.4.1", 23)
    first = factory.serial

    conn.close()

    assert first.is_open is False
    assert conn.is_connected() is False
    assert conn.open("192.168.4.1", 23) is True
    assert len(factory.calls) == 2


def test_closed_handle_reports_disconnected(make_factory) -> None:
    factory = make_factory()
    conn = ProtocolConnection(transport_factory=factory)
    conn.open("192.168.4.1", 23)

    factory.serial.is_open = False

    assert conn.is_connected() is False


class _FakeBoxHandler(socketserver.BaseRequestHandler):
    replies = {b"c": b"OK \n", b"s": b"OPN\n", b"p": b"NO \n"}

    def handle(self) -> None:
        buffer = b""
        while True:
            data = self.request.recv(64)
            if not data:
                return
            buffer += data
            while b">" in buffer:
                command, buffer = buffer.split(b">", 1)
                reply = self.replies.get(command)
                if reply:
                    self.request.sendall(reply)


@pytest.fixture
def fake_box():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _FakeBoxHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address
    server.shutdown()
    server.server_close()
    thread.join(timeout=1.0)


def test_real_socket_round_trip(fake_box) -> None:
    host, port = fake_box
    conn = ProtocolConnection(timeout_s=1.0)

    assert conn.open(host, port) is True
    try:
        assert conn.is_connected() is True
        assert conn.execute_command("s").payload == "OPN"
        assert conn.execute_command("p").payload == "NO"
        assert conn.execute_command("u", expect_response=False) is COMMAND_SENT
        # no reply for unlock; the next query still lines up
        assert conn.execute_command("s").payload == "OPN"
    finally:
        conn.close()

    assert conn.is_connected() is False


def test_real_socket_refused() -> None:
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    conn = ProtocolConnection(timeout_s=0.5)
    with pytest.raises(ConnectionFailed):
        conn.open("127.0.0.1", port)
    assert conn.is_connected() is False
