import asyncio
import logging
import threading
import time
from asyncio import Task
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pythonosc.osc_message_builder import OscMessageBuilder
from pythonosc.osc_packet import OscPacket, ParseError

from pyxair.exceptions import MixerConnectionError, MixerNotConnectedError

# X-Air mixers listen for OSC on UDP 10024. Some firmware only answers to the
# port the request came from, and older firmware only to 10025, so the local
# port is fixed by default rather than ephemeral.
DEFAULT_CONTROL_PORT = 10024
DEFAULT_LOCAL_PORT = 10025

# The mixer stops pushing updates roughly 10s after the last /xremote.
DEFAULT_KEEPALIVE_SECONDS = 5.0
MIN_KEEPALIVE_SECONDS = 5.0
MAX_KEEPALIVE_SECONDS = 30.0

SUBSCRIBE_ADDRESS = "/xremote"
INFO_ADDRESS = "/xinfo"

SOCKET_RELEASE_TIMEOUT_SECONDS = 1.0

# (address, args, timestamp)
PacketCallback = Callable[[str, tuple, datetime], None]


def encode_message(address: str, args=()) -> bytes:
    """Encode one OSC message. Python types pick the OSC type tag (float -> f, int -> i, str -> s)."""
    builder = OscMessageBuilder(address=address)
    for arg in args:
        builder.add_arg(arg)
    return builder.build().dgram


def decode_packet(data: bytes) -> list[tuple[str, tuple]]:
    """Decode a datagram into (address, args) pairs. Bundles are flattened.

    Raises:
        ParseError: the datagram is not a valid OSC message or bundle.
    """
    packet = OscPacket(data)
    return [(timed.message.address, tuple(timed.message.params)) for timed in packet.messages]


class MixerProtocol(asyncio.DatagramProtocol):
    """UDP transport to one X-Air mixer.

    Owns the local socket, sends fire-and-forget OSC commands, keeps the
    /xremote subscription alive and fans every received message out to the
    registered packet callbacks.
    """

    _keepalive_task: Optional[Task[Any]]
    _connected: bool

    def __init__(
        self,
        hostname,
        port=DEFAULT_CONTROL_PORT,
        local_port=DEFAULT_LOCAL_PORT,
        keepalive_time=DEFAULT_KEEPALIVE_SECONDS,
        enable_keepalive=True,
    ):
        self._logger = logging.getLogger(__name__)
        self._hostname = hostname
        self._port = port
        self._local_port = local_port
        self._keepalive_time = min(max(keepalive_time, MIN_KEEPALIVE_SECONDS), MAX_KEEPALIVE_SECONDS)
        self._enable_keepalive = enable_keepalive

        self._transport: Optional[asyncio.DatagramTransport] = None
        self._keepalive_task = None
        self._connected = False
        self._closed = False
        # Resolved by connection_lost(), once asyncio has released the socket
        self._socket_released: Optional[asyncio.Future] = None
        # Track last received data time so the connector can detect a silent mixer
        self._last_received_time: Optional[float] = None

        self._callbacks_lock = threading.Lock()
        self._received_callbacks: list[PacketCallback] = []
        self._sent_callbacks: list[PacketCallback] = []

    # ========== Lifecycle ==========

    async def async_connect(self):
        """Bind the local port, subscribe to updates and request the mixer info.

        Raises:
            MixerConnectionError: the local UDP port could not be bound.
        """
        if self._closed:
            raise MixerConnectionError("Protocol was closed, create a new one to reconnect")
        loop = asyncio.get_running_loop()
        self._socket_released = loop.create_future()
        try:
            await loop.create_datagram_endpoint(
                lambda: self, local_addr=("0.0.0.0", self._local_port)
            )
        except OSError as e:
            raise MixerConnectionError(
                f"Could not bind UDP port {self._local_port} for {self._hostname}: {e}"
            ) from e

        self.send(SUBSCRIBE_ADDRESS)
        self.send(INFO_ADDRESS)

        if self._enable_keepalive:
            self._keepalive_task = loop.create_task(self._keepalive())
            self._logger.info("Keepalive task started (interval=%ss)", self._keepalive_time)

    def close(self):
        """Stop the keepalive and release the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._connected = False
        if self._keepalive_task is not None and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        self._keepalive_task = None
        if self._transport is not None:
            self._transport.close()
        self._transport = None
        self._logger.info(f"Closed connection to {self._hostname}:{self._port}")

    async def async_close(self, timeout=SOCKET_RELEASE_TIMEOUT_SECONDS):
        """Close and wait until the local port can be bound again.

        transport.close() only schedules the socket release for the next loop
        iteration, so a new protocol on the same local port must await this.
        """
        released = self._socket_released if self._transport is not None else None
        self.close()
        if released is None or released.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(released), timeout)
        except asyncio.TimeoutError:
            self._logger.warning(f"Socket for {self._hostname} not released after {timeout}s")

    def connection_made(self, transport):
        """Method from asyncio.DatagramProtocol"""
        self._transport = transport
        self._connected = True
        sockname = transport.get_extra_info("sockname")
        if sockname:
            self._local_port = sockname[1]
        self._logger.info(f"UDP endpoint bound to {sockname}, mixer at {self._hostname}:{self._port}")

    def connection_lost(self, exc):
        """Method from asyncio.DatagramProtocol"""
        self._connected = False
        if self._socket_released is not None and not self._socket_released.done():
            self._socket_released.set_result(None)
        if self._keepalive_task is not None and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        if exc is not None:
            self._logger.error(f"Connection to {self._hostname} lost: {exc}")

    def error_received(self, exc):
        """Method from asyncio.DatagramProtocol"""
        # Typically ICMP port unreachable while the mixer is rebooting
        self._logger.warning(f"UDP error from {self._hostname}: {exc}")

    # ========== Properties ==========

    @property
    def connected(self) -> bool:
        return self._connected and self._transport is not None

    @property
    def hostname(self) -> str:
        return self._hostname

    @property
    def local_port(self) -> int:
        return self._local_port

    @property
    def remote_address(self) -> tuple[str, int]:
        return self._hostname, self._port

    @property
    def last_received_time(self) -> Optional[float]:
        """time.monotonic() of the last datagram, or None if nothing arrived yet."""
        return self._last_received_time

    # ========== Packet listeners ==========

    def add_packet_listener(self, callback: PacketCallback):
        with self._callbacks_lock:
            self._received_callbacks.append(callback)

    def remove_packet_listener(self, callback: PacketCallback):
        with self._callbacks_lock:
            if callback in self._received_callbacks:
                self._received_callbacks.remove(callback)

    def add_sent_listener(self, callback: PacketCallback):
        with self._callbacks_lock:
            self._sent_callbacks.append(callback)

    def remove_sent_listener(self, callback: PacketCallback):
        with self._callbacks_lock:
            if callback in self._sent_callbacks:
                self._sent_callbacks.remove(callback)

    def _fire(self, callbacks: list[PacketCallback], address: str, args: tuple, timestamp: datetime):
        with self._callbacks_lock:
            snapshot = list(callbacks)
        for callback in snapshot:
            try:
                callback(address, args, timestamp)
            except Exception as e:
                self._logger.error(f"Packet listener failed for {address}: {e}", exc_info=True)

    # ========== Send / receive ==========

    def send(self, address: str, *args) -> datetime:
        """Send one OSC message. Returns once the datagram is handed to the socket.

        Raises:
            MixerNotConnectedError: the protocol has no open socket.
        """
        if not self.connected:
            raise MixerNotConnectedError(f"Not connected to {self._hostname}, cannot send {address}")
        data = encode_message(address, args)
        sent_at = datetime.now(timezone.utc)
        self._logger.debug(f"SEND: {address} {list(args)}")
        self._transport.sendto(data, (self._hostname, self._port))
        self._fire(self._sent_callbacks, address, args, sent_at)
        return sent_at

    def datagram_received(self, data, addr):
        """Method from asyncio.DatagramProtocol"""
        rx_time = datetime.now(timezone.utc)
        self._last_received_time = time.monotonic()
        try:
            messages = decode_packet(data)
        except ParseError as e:
            self._logger.warning(f"Dropping malformed datagram from {addr} ({len(data)} bytes): {e}")
            return
        except Exception as e:
            self._logger.error(f"Unexpected error decoding datagram from {addr}: {e}", exc_info=True)
            return

        for address, args in messages:
            self._logger.debug(f"RECV: {address} {list(args)}")
            self._fire(self._received_callbacks, address, args, rx_time)

    async def _keepalive(self):
        """Re-send /xremote so the mixer keeps pushing state changes."""
        while True:
            try:
                await asyncio.sleep(self._keepalive_time)
                self._logger.debug("keepalive - renewing remote subscription")
                self.send(SUBSCRIBE_ADDRESS)
            except asyncio.CancelledError:
                self._logger.debug("Keepalive cancelled")
                break
            except MixerNotConnectedError:
                self._logger.debug("Keepalive stopped, transport is closed")
                break
            except Exception as e:
                self._logger.error(f"Error in keepalive: {e}")
