import socket
import time

import cbor2
import pytest

from hegelrun.connection import (
    CLOSE_CHANNEL_MESSAGE_ID,
    CLOSE_CHANNEL_PAYLOAD,
    ChannelClosedError,
    Connection,
    ConnectionClosedError,
    RemoteError,
    ServerCrashedError,
)
from hegelrun.packet import Packet, read_packet, write_packet


class _Server:
    def __init__(self, sock):
        self.sock = sock
        self.reader = sock.makefile("rb")
        self.writer = sock.makefile("wb")

    def read(self):
        return read_packet(self.reader)

    def send(self, packet):
        write_packet(self.writer, packet)


@pytest.fixture
def link():
    client_sock, server_sock = socket.socketpair()
    server_sock.settimeout(5)
    conn = Connection(client_sock.makefile("rb"), client_sock.makefile("wb"))
    server = _Server(server_sock)
    yield conn, server
    for sock in (client_sock, server_sock):
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_control_channel_has_id_zero(link):
    conn, _ = link
    assert conn.control_channel().channel_id == 0


def test_new_channels_are_odd_and_distinct(link):
    conn, _ = link
    ids = [conn.new_channel().channel_id for _ in range(5)]
    assert all(i % 2 == 1 for i in ids)
    assert len(set(ids)) == len(ids)


def test_send_request_writes_packet(link):
    conn, server = link
    channel = conn.new_channel()
    first = channel.send_request(b"one")
    second = channel.send_request(b"two")
    assert first == 1
    assert second == first + 1
    packet = server.read()
    assert packet == Packet(channel.channel_id, first, False, b"one")
    assert server.read().message_id == second


def test_receive_reply(link):
    conn, server = link
    channel = conn.new_channel()
    message_id = channel.send_request(b"ping")
    server.read()
    server.send(Packet(channel.channel_id, message_id, True, b"pong"))
    assert channel.receive_reply(message_id) == b"pong"


def test_replies_out_of_order(link):
    conn, server = link
    channel = conn.new_channel()
    first = channel.send_request(b"a")
    second = channel.send_request(b"b")
    server.send(Packet(channel.channel_id, second, True, b"reply-b"))
    server.send(Packet(channel.channel_id, first, True, b"reply-a"))
    assert channel.receive_reply(first) == b"reply-a"
    assert channel.receive_reply(second) == b"reply-b"


def test_receive_request_and_write_reply(link):
    conn, server = link
    channel = conn.connect_channel(6)
    server.send(Packet(6, 9, False, b"event"))
    message_id, payload = channel.receive_request()
    assert (message_id, payload) == (9, b"event")
    channel.write_reply(message_id, b"ack")
    assert server.read() == Packet(6, 9, True, b"ack")


def test_packets_for_unknown_channels_are_dropped(link):
    conn, server = link
    channel = conn.connect_channel(4)
    server.send(Packet(999, 1, False, b"lost"))
    server.send(Packet(4, 2, False, b"kept"))
    assert channel.receive_request() == (2, b"kept")


def test_request_cbor_returns_result(link):
    conn, server = link
    channel = conn.new_channel()
    server.send(Packet(channel.channel_id, 1, True, cbor2.dumps({"result": [1, 2]})))
    assert channel.request_cbor({"command": "generate"}) == [1, 2]
    sent = server.read()
    assert cbor2.loads(sent.payload) == {"command": "generate"}


def test_request_cbor_returns_whole_response_without_result(link):
    conn, server = link
    channel = conn.new_channel()
    response = {"status": "ok"}
    server.send(Packet(channel.channel_id, 1, True, cbor2.dumps(response)))
    assert channel.request_cbor({"command": "x"}) == response


def test_request_cbor_raises_remote_error(link):
    conn, server = link
    channel = conn.new_channel()
    reply = {"error": "overflow", "type": "StopTest"}
    server.send(Packet(channel.channel_id, 1, True, cbor2.dumps(reply)))
    with pytest.raises(RemoteError) as info:
        channel.request_cbor({"command": "generate"})
    assert info.value.error_type == "StopTest"
    assert info.value.error == "overflow"
    assert "overflow" in str(info.value)
    assert "StopTest" in str(info.value)


def test_close_sends_close_packet_and_blocks_sends(link):
    conn, server = link
    channel = conn.new_channel()
    channel.close()
    packet = server.read()
    assert packet.channel == channel.channel_id
    assert packet.message_id == CLOSE_CHANNEL_MESSAGE_ID
    assert packet.payload == CLOSE_CHANNEL_PAYLOAD
    assert not packet.is_reply
    with pytest.raises(ChannelClosedError, match="channel is closed"):
        channel.send_request(b"late")


def test_mark_closed_blocks_receive(link):
    conn, _ = link
    channel = conn.new_channel()
    channel.mark_closed()
    with pytest.raises(ChannelClosedError):
        channel.receive_request()


def test_unregistered_channel_is_disconnected(link):
    conn, _ = link
    channel = conn.new_channel()
    conn.unregister_channel(channel.channel_id)
    with pytest.raises(ConnectionClosedError, match="channel disconnected"):
        channel.receive_request()


def test_server_exit_is_detected(link):
    conn, server = link
    channel = conn.new_channel()
    message_id = channel.send_request(b"ping")
    server.sock.shutdown(socket.SHUT_RDWR)
    assert _wait_for(conn.server_has_exited)
    with pytest.raises(ServerCrashedError, match="exited unexpectedly"):
        channel.receive_reply(message_id)


def test_mark_server_exited(link):
    conn, _ = link
    channel = conn.new_channel()
    conn.mark_server_exited()
    assert conn.server_has_exited()
    with pytest.raises(ServerCrashedError):
        channel.receive_request()