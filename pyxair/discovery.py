import asyncio
import logging
from typing import Optional

from pythonosc.osc_packet import ParseError

from pyxair.models import MixerInfo
from pyxair.network import MulticastLock, NullMulticastLock
from pyxair.protocol import DEFAULT_CONTROL_PORT, INFO_ADDRESS, decode_packet, encode_message

BROADCAST_ADDRESS = "255.255.255.255"
DEFAULT_SCAN_TIMEOUT_MS = 2000

# Replies to /xinfo echo the address; some firmware answers in plain text
# starting with the product family instead.
IDENTIFICATION_MARKERS = ("xinfo", "x-air")


def response_text(payload: bytes) -> str:
    """Flatten an identification reply into text.

    A proper OSC /xinfo reply becomes its address and arguments joined with
    NUL, so arguments containing spaces stay whole. Anything else is decoded
    as ASCII with undecodable bytes dropped.
    """
    try:
        messages = decode_packet(payload)
    except (ParseError, ValueError, IndexError):
        messages = []
    for address, args in messages:
        if address.lower() == INFO_ADDRESS:
            return "\x00".join([address] + [str(arg) for arg in args])
    return payload.decode("ascii", errors="ignore")


def is_mixer_response(payload: bytes) -> bool:
    text = response_text(payload).lower()
    return any(marker in text for marker in IDENTIFICATION_MARKERS)


def parse_mixer_info(ip_address: str, payload: bytes) -> MixerInfo:
    return MixerInfo(ip_address, response_text(payload).strip("\x00 \r\n"))


class _DiscoveryProtocol(asyncio.DatagramProtocol):

    def __init__(self, responses: asyncio.Queue):
        self._logger = logging.getLogger(__name__)
        self._responses = responses

    def datagram_received(self, data, addr):
        """Method from asyncio.DatagramProtocol"""
        self._responses.put_nowait((data, addr))

    def error_received(self, exc):
        """Method from asyncio.DatagramProtocol"""
        self._logger.debug(f"Discovery socket error: {exc}")


class MixerScanner:
    """Finds mixers by broadcasting /xinfo and collecting the replies."""

    def __init__(
        self,
        port: int = DEFAULT_CONTROL_PORT,
        broadcast_address: str = BROADCAST_ADDRESS,
        multicast_lock: Optional[MulticastLock] = None,
    ):
        self._logger = logging.getLogger(__name__)
        self._port = port
        self._broadcast_address = broadcast_address
        self._multicast_lock = multicast_lock or NullMulticastLock()

    async def scan(self, timeout_ms: int = DEFAULT_SCAN_TIMEOUT_MS) -> list[MixerInfo]:
        """Broadcast one /xinfo and return the distinct mixers that answered in time.

        Socket errors are logged and give an empty list; silence is not an error.
        """
        with self._multicast_lock:
            try:
                mixers = await self._scan(timeout_ms)
            except OSError as e:
                self._logger.warning(f"Scan failed: {e}")
                return []
        self._logger.info(f"Scan complete: {len(mixers)} mixers found")
        return mixers

    async def _open_endpoint(self, responses: asyncio.Queue) -> asyncio.DatagramTransport:
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _DiscoveryProtocol(responses),
            local_addr=("0.0.0.0", 0),
            allow_broadcast=True,
        )
        return transport

    async def _scan(self, timeout_ms: int) -> list[MixerInfo]:
        loop = asyncio.get_running_loop()
        responses: asyncio.Queue = asyncio.Queue()
        transport = await self._open_endpoint(responses)
        found: dict[str, MixerInfo] = {}
        try:
            self._logger.info(f"Broadcasting {INFO_ADDRESS} to {self._broadcast_address}:{self._port}")
            transport.sendto(encode_message(INFO_ADDRESS), (self._broadcast_address, self._port))

            deadline = loop.time() + timeout_ms / 1000.0
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    data, addr = await asyncio.wait_for(responses.get(), remaining)
                except asyncio.TimeoutError:
                    break

                ip_address = addr[0]
                if not is_mixer_response(data):
                    self._logger.debug(f"Ignoring non-mixer reply from {ip_address}")
                    continue
                if ip_address in found:
                    continue
                found[ip_address] = parse_mixer_info(ip_address, data)
                self._logger.info(f"Mixer found at {ip_address}: {found[ip_address].name}")
        finally:
            transport.close()
        return list(found.values())
