"""Multiplexed request/reply channels over a single packet stream."""

from __future__ import annotations

import itertools
import queue
import threading
from collections import deque
from typing import Any, BinaryIO

import cbor2

from hegelrun.packet import Packet, read_packet, write_packet

HANDSHAKE_STRING = b"hegel_handshake_start"

SERVER_CRASHED_MESSAGE = (
    "The hegel server process exited unexpectedly. "
    "See .hegel/server.log for diagnostic information."
)

CLOSE_CHANNEL_PAYLOAD = b"\xfe"
CLOSE_CHANNEL_MESSAGE_ID = (1 << 31) - 1

_POLL_INTERVAL = 0.05


class ConnectionClosedError(ConnectionError):
    """The channel was disconnected from the connection."""

    def __init__(self, message: str = "channel disconnected") -> None:
        super().__init__(message)


class ServerCrashedError(ConnectionError):
    """The server process went away while it was being talked to."""

    def __init__(self, message: str = SERVER_CRASHED_MESSAGE) -> None:
        super().__init__(message)


class ChannelClosedError(BrokenPipeError):
    """An operation was attempted on a closed channel."""

    def __init__(self, message: str = "channel is closed") -> None:
        super().__init__(message)


class RemoteError(Exception):
    """The server answered a request with an error."""

    def __init__(self, error_type: str, error: Any) -> None:
        self.error_type = error_type
        self.error = error
        super().__init__(f"Server error ({error_type}): {error!r}")


class Connection:
    """A packet stream shared by many channels.

    A background thread reads packets and hands each to the queue of the
    channel it is addressed to; packets for unknown channels are dropped.
    """

    def __init__(self, reader: BinaryIO, writer: BinaryIO) -> None:
        self._writer = writer
        self._write_lock = threading.Lock()
        self._senders: dict[int, queue.Queue[Packet]] = {}
        self._senders_lock = threading.Lock()
        # channel 0 is reserved for the control channel
        self._channel_counter = itertools.count(1)
        self._counter_lock = threading.Lock()
        self._server_exited = threading.Event()
        self._reader_thread = threading.Thread(
            target=self._read_loop, args=(reader,), name="hegel-reader", daemon=True
        )
        self._reader_thread.start()

    def _read_loop(self, reader: BinaryIO) -> None:
        while True:
            try:
                packet = read_packet(reader)
            except (OSError, EOFError, ValueError):
                self._server_exited.set()
                return
            with self._senders_lock:
                inbox = self._senders.get(packet.channel)
            if inbox is not None:
                inbox.put(packet)

    def control_channel(self) -> Channel:
        """Return the channel with id 0."""
        return Channel(0, self)

    def new_channel(self) -> Channel:
        """Open a fresh client channel; client channel ids are odd."""
        with self._counter_lock:
            number = next(self._channel_counter)
        return Channel((number << 1) | 1, self)

    def connect_channel(self, channel_id: int) -> Channel:
        """Attach to a channel the server opened."""
        return Channel(channel_id, self)

    def _register(self, channel_id: int) -> queue.Queue[Packet]:
        inbox: queue.Queue[Packet] = queue.Queue()
        with self._senders_lock:
            self._senders[channel_id] = inbox
        return inbox

    def _is_registered(self, channel_id: int, inbox: queue.Queue[Packet]) -> bool:
        with self._senders_lock:
            return self._senders.get(channel_id) is inbox

    def unregister_channel(self, channel_id: int) -> None:
        """Stop delivering packets to the given channel."""
        with self._senders_lock:
            self._senders.pop(channel_id, None)

    def mark_server_exited(self) -> None:
        self._server_exited.set()

    def server_has_exited(self) -> bool:
        return self._server_exited.is_set()

    def send_packet(self, packet: Packet) -> None:
        """Write a packet, reporting a crashed server if the write fails after exit."""
        with self._write_lock:
            try:
                write_packet(self._writer, packet)
            except (OSError, ValueError) as exc:
                if self.server_has_exited():
                    raise ServerCrashedError() from exc
                raise


class Channel:
    """One logical conversation on a connection."""

    def __init__(self, channel_id: int, connection: Connection) -> None:
        self.channel_id = channel_id
        self._connection = connection
        self._inbox = connection._register(channel_id)
        self._next_message_id = 1
        self._responses: dict[int, bytes] = {}
        self._requests: deque[Packet] = deque()
        self._closed = False

    def __enter__(self) -> Channel:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._connection.unregister_channel(self.channel_id)

    def mark_closed(self) -> None:
        """Mark the channel closed without telling the server."""
        self._closed = True

    def _check_closed(self) -> None:
        if self._closed:
            raise ChannelClosedError()

    def send_request(self, payload: bytes) -> int:
        """Send a request and return its message id."""
        self._check_closed()
        message_id = self._next_message_id
        self._next_message_id += 1
        self._connection.send_packet(Packet(self.channel_id, message_id, False, payload))
        return message_id

    def write_reply(self, message_id: int, payload: bytes) -> None:
        """Answer a request received on this channel."""
        self._connection.send_packet(Packet(self.channel_id, message_id, True, payload))

    def receive_reply(self, message_id: int) -> bytes:
        """Wait for the reply to a request sent earlier."""
        while message_id not in self._responses:
            self._check_closed()
            self._receive_one_packet()
        return self._responses.pop(message_id)

    def receive_request(self) -> tuple[int, bytes]:
        """Wait for the next request from the server."""
        while not self._requests:
            self._check_closed()
            self._receive_one_packet()
        packet = self._requests.popleft()
        return packet.message_id, packet.payload

    def _next_packet(self) -> Packet:
        while True:
            try:
                return self._inbox.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                pass
            exited = self._connection.server_has_exited()
            detached = not self._connection._is_registered(self.channel_id, self._inbox)
            if exited or detached:
                try:
                    return self._inbox.get_nowait()
                except queue.Empty:
                    if exited:
                        raise ServerCrashedError() from None
                    raise ConnectionClosedError() from None

    def _receive_one_packet(self) -> None:
        packet = self._next_packet()
        if packet.is_reply:
            self._responses[packet.message_id] = packet.payload
        else:
            self._requests.append(packet)

    def close(self) -> None:
        """Close the channel and tell the server."""
        self.mark_closed()
        self._connection.unregister_channel(self.channel_id)
        self._connection.send_packet(
            Packet(self.channel_id, CLOSE_CHANNEL_MESSAGE_ID, False, CLOSE_CHANNEL_PAYLOAD)
        )

    def request_cbor(self, message: Any) -> Any:
        """Send a CBOR request and return the decoded result.

        A reply holding an "error" key raises RemoteError; a reply holding a
        "result" key yields that value; any other reply is returned whole.
        """
        message_id = self.send_request(cbor2.dumps(message))
        response = cbor2.loads(self.receive_reply(message_id))

        if isinstance(response, dict):
            if "error" in response:
                error_type = response.get("type")
                if not isinstance(error_type, str):
                    error_type = ""
                raise RemoteError(error_type, response["error"])
            if "result" in response:
                return response["result"]
        return response