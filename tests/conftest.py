import asyncio
import socket
import time
from datetime import datetime, timezone

import pytest

from pyxair.exceptions import MixerConnectionError, MixerNotConnectedError
from pyxair.listener import MixerEventListener
from pyxair.models import MixerModel
from pyxair.protocol import decode_packet, encode_message

XINFO_REPLY = ("192.168.1.50", "XR18-0A-0B-0C", "XR18", "1.15")


class FakeProtocol:
    """Stands in for MixerProtocol without opening a socket.

    Records every send, answers /xinfo on connect (unless reply is None) and
    answers argument-less sends listed in auto_replies.
    """

    def __init__(self, hostname, port=10024, local_port=10025, keepalive_time=5.0,
                 enable_keepalive=True, reply=XINFO_REPLY, fail_bind=False):
        self.hostname = hostname
        self.port = port
        self.local_port = local_port
        self.reply = reply
        self.fail_bind = fail_bind
        self.auto_replies: dict[str, tuple] = {}
        self.sent: list[tuple[str, tuple]] = []
        self.connected = False
        self.closed = False
        self.last_received_time = None
        self.packet_listeners = []
        self.sent_listeners = []

    async def async_connect(self):
        if self.fail_bind:
            raise MixerConnectionError(f"Could not bind UDP port {self.local_port}")
        self.connected = True
        self.send("/xremote")
        self.send("/xinfo")
        if self.reply is not None:
            asyncio.get_running_loop().call_soon(self.receive, "/xinfo", self.reply)

    def close(self):
        self.closed = True
        self.connected = False

    async def async_close(self):
        self.close()

    def add_packet_listener(self, callback):
        self.packet_listeners.append(callback)

    def remove_packet_listener(self, callback):
        if callback in self.packet_listeners:
            self.packet_listeners.remove(callback)

    def add_sent_listener(self, callback):
        self.sent_listeners.append(callback)

    def remove_sent_listener(self, callback):
        if callback in self.sent_listeners:
            self.sent_listeners.remove(callback)

    def send(self, address, *args):
        if not self.connected:
            raise MixerNotConnectedError(f"Not connected to {self.hostname}")
        sent_at = datetime.now(timezone.utc)
        self.sent.append((address, args))
        for callback in list(self.sent_listeners):
            callback(address, args, sent_at)
        if not args and address in self.auto_replies:
            asyncio.get_running_loop().call_soon(self.receive, address, self.auto_replies[address])
        return sent_at

    def receive(self, address, args):
        self.last_received_time = time.monotonic()
        rx_time = datetime.now(timezone.utc)
        for callback in list(self.packet_listeners):
            callback(address, tuple(args), rx_time)

    def sent_addresses(self) -> list[str]:
        return [address for address, _ in self.sent]


class LoopbackMixer(asyncio.DatagramProtocol):
    """A mixer on 127.0.0.1: records requests and answers /xinfo with reply."""

    def __init__(self, reply=("127.0.0.1", "XR18-TEST", "XR18", "1.15")):
        self.reply = reply
        self.transport = None
        self.requests = []

    async def start(self) -> int:
        """Bind an ephemeral port and return it."""
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(lambda: self, local_addr=("127.0.0.1", 0))
        return self.transport.get_extra_info("sockname")[1]

    def stop(self):
        if self.transport is not None:
            self.transport.close()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        for address, args in decode_packet(data):
            self.requests.append((address, args))
            if address == "/xinfo":
                self.transport.sendto(encode_message("/xinfo", list(self.reply)), addr)


def free_udp_port() -> int:
    """A local UDP port nothing is bound to right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.bind(("0.0.0.0", 0))
        return sock.getsockname()[1]


class FakeProtocolFactory:
    """Creates FakeProtocols and remembers them, so tests can see every socket that would be opened."""

    def __init__(self):
        self.created: list[FakeProtocol] = []
        self.reply = XINFO_REPLY
        self.fail_bind = False

    def __call__(self, hostname, **kwargs):
        protocol = FakeProtocol(hostname, reply=self.reply, fail_bind=self.fail_bind, **kwargs)
        self.created.append(protocol)
        return protocol

    @property
    def last(self) -> FakeProtocol:
        return self.created[-1]


class RecordingListener(MixerEventListener):

    def __init__(self):
        self.states = []
        self.changes = []
        self.bus_updates = []
        self.traffic = []
        self.errors = []
        self.connected_count = 0
        self.disconnected_count = 0

    def connect_state_changed(self, state):
        self.states.append(state)

    def state_changed(self, key):
        self.changes.append(key)

    def bus_updated(self, bus_index, name, color):
        self.bus_updates.append((bus_index, name, color))

    def connected(self):
        self.connected_count += 1

    def disconnected(self):
        self.disconnected_count += 1

    def traffic_appended(self, entry):
        self.traffic.append(entry)

    def error(self, error_message):
        self.errors.append(error_message)


@pytest.fixture
def protocol_factory():
    return FakeProtocolFactory()


@pytest.fixture
def protocol():
    """A connected FakeProtocol."""
    fake = FakeProtocol("192.168.1.50")
    fake.connected = True
    return fake


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def model():
    mixer_model = MixerModel()
    mixer_model.configure("xr18")
    return mixer_model
