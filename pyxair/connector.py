import asyncio
import ipaddress
import logging
import time
from asyncio import Task
from typing import Any, Callable, Optional

from pyxair.discovery import DEFAULT_SCAN_TIMEOUT_MS, MixerScanner
from pyxair.exceptions import MixerConnectionError, MixerNotConnectedError
from pyxair.listener import MixerEventListener
from pyxair.models import ConnectState, MixerInfo
from pyxair.network import NetworkInfo, PsutilNetworkInfo, same_subnet
from pyxair.protocol import INFO_ADDRESS, MixerProtocol, PacketCallback
from pyxair.storage import LAST_MIXER_KEY, KeyValueStore, MemoryStore

PROBE_TIMEOUT_MS = 500

DEFAULT_WATCHDOG_INTERVAL = 5.0
DEFAULT_IDLE_TIMEOUT = 30.0
DEFAULT_RECONNECT_TIME = 10.0

ProtocolFactory = Callable[[str], MixerProtocol]

_TRANSITIONS: dict[ConnectState, set[ConnectState]] = {
    ConnectState.IDLE: {ConnectState.SCAN_REQUIRED, ConnectState.CONNECTING},
    ConnectState.CONNECTING: {ConnectState.CONNECTED, ConnectState.WIFI_MISMATCH, ConnectState.SCAN_REQUIRED},
    # CONNECTING again when the watchdog reconnects a silent mixer
    ConnectState.CONNECTED: {ConnectState.CONNECTING},
    ConnectState.WIFI_MISMATCH: {ConnectState.MANUAL_ENTRY, ConnectState.CONNECTING},
    ConnectState.SCAN_REQUIRED: {ConnectState.MIXERS_FOUND, ConnectState.NO_MIXER_FOUND},
    ConnectState.MIXERS_FOUND: {ConnectState.CONNECTING},
    ConnectState.NO_MIXER_FOUND: {ConnectState.SCAN_REQUIRED},
    ConnectState.MANUAL_ENTRY: {ConnectState.CONNECTING},
}


class MixerConnector:
    """Finds, connects to and keeps a connection with one mixer.

    Owns the MixerProtocol: a new one is created for every connection
    attempt and the previous one is closed first. Progress is published as
    connect_state_changed() on the callback; connected()/disconnected() mark
    the moments a protocol becomes usable or stops being usable.

    A connection only counts once the mixer answered /xinfo, which also
    filters out hosts that accept UDP but are not mixers.
    """

    _watchdog_task: Optional[Task[Any]]

    def __init__(
        self,
        callback: MixerEventListener,
        store: Optional[KeyValueStore] = None,
        network: Optional[NetworkInfo] = None,
        scanner: Optional[MixerScanner] = None,
        protocol_factory: Optional[ProtocolFactory] = None,
        packet_listener: Optional[PacketCallback] = None,
        sent_listener: Optional[PacketCallback] = None,
        probe_timeout_ms: int = PROBE_TIMEOUT_MS,
        watchdog_interval: float = DEFAULT_WATCHDOG_INTERVAL,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        reconnect_time: float = DEFAULT_RECONNECT_TIME,
        auto_reconnect: bool = True,
    ):
        self._logger = logging.getLogger(__name__)
        self._callback = callback
        self._store = store if store is not None else MemoryStore()
        self._network = network or PsutilNetworkInfo()
        self._scanner = scanner or MixerScanner()
        self._protocol_factory = protocol_factory or MixerProtocol
        self._packet_listener = packet_listener
        self._sent_listener = sent_listener
        self._probe_timeout_ms = probe_timeout_ms
        self._watchdog_interval = watchdog_interval
        self._idle_timeout = idle_timeout
        self._reconnect_time = reconnect_time
        self._auto_reconnect = auto_reconnect

        self._state = ConnectState.IDLE
        self._protocol: Optional[MixerProtocol] = None
        self._target: Optional[MixerInfo] = None
        self._connected_mixer: Optional[MixerInfo] = None
        self._found_mixers: list[MixerInfo] = []
        self._connected_at: float = 0.0
        self._watchdog_task = None

    # ========== Properties ==========

    @property
    def state(self) -> ConnectState:
        return self._state

    @property
    def found_mixers(self) -> list[MixerInfo]:
        """Result of the last scan."""
        return list(self._found_mixers)

    @property
    def connected_mixer(self) -> Optional[MixerInfo]:
        """The mixer of the live connection, updated with its /xinfo reply."""
        return self._connected_mixer

    @property
    def target(self) -> Optional[MixerInfo]:
        """The mixer of the last connection attempt, used by retry()."""
        return self._target

    def require_protocol(self) -> MixerProtocol:
        """The live protocol.

        Raises:
            MixerNotConnectedError: no connection is established.
        """
        protocol = self._protocol
        if protocol is None or not protocol.connected:
            raise MixerNotConnectedError("No mixer connected")
        return protocol

    # ========== State ==========

    def _set_state(self, state: ConnectState):
        previous = self._state
        if state == previous:
            return
        if state != ConnectState.IDLE and state not in _TRANSITIONS[previous]:
            self._logger.warning(f"Unexpected state transition {previous.name} -> {state.name}")
        self._state = state
        self._logger.info(f"Connection state {previous.name} -> {state.name}")
        self._callback.connect_state_changed(state)

    # ========== Operations ==========

    async def restore(self) -> bool:
        """Reconnect to the remembered mixer, or ask for a scan if there is none."""
        mixer = self._load_last_mixer()
        if mixer is None:
            self._set_state(ConnectState.SCAN_REQUIRED)
            return False
        self._logger.info(f"Restoring last mixer at {mixer.ip_address}")
        return await self.connect(mixer)

    async def scan(self, timeout_ms: int = DEFAULT_SCAN_TIMEOUT_MS) -> list[MixerInfo]:
        self._set_state(ConnectState.SCAN_REQUIRED)
        self._found_mixers = await self._scanner.scan(timeout_ms)
        if self._found_mixers:
            self._set_state(ConnectState.MIXERS_FOUND)
        else:
            self._set_state(ConnectState.NO_MIXER_FOUND)
        return list(self._found_mixers)

    async def connect(self, mixer: MixerInfo) -> bool:
        """Connect to a mixer. Returns whether it answered the liveness probe."""
        self._stop_watchdog()
        self._target = mixer
        self._set_state(ConnectState.CONNECTING)

        # No socket is opened towards a mixer that cannot be reached
        local_address = self._network.local_ipv4(mixer.ip_address)
        if not same_subnet(mixer.ip_address, local_address):
            self._logger.warning(
                f"Mixer {mixer.ip_address} is not on the local subnet ({local_address or 'no active interface'})"
            )
            await self._async_dispose_protocol()
            self._set_state(ConnectState.WIFI_MISMATCH)
            return False

        # The new protocol binds the same local port
        await self._async_dispose_protocol()
        if await self._attempt(mixer):
            return True
        self._set_state(ConnectState.SCAN_REQUIRED)
        return False

    async def connect_manual(self, ip_address: str) -> bool:
        """Connect to a user-supplied address.

        Raises:
            ValueError: ip_address is not an IPv4 literal.
        """
        address = str(ipaddress.IPv4Address(ip_address.strip()))
        self._set_state(ConnectState.MANUAL_ENTRY)
        return await self.connect(MixerInfo(address))

    async def retry(self) -> bool:
        """Connect again to the last target, e.g. after the host changed networks."""
        if self._target is None:
            self._set_state(ConnectState.SCAN_REQUIRED)
            return False
        return await self.connect(self._target)

    async def disconnect(self):
        self._stop_watchdog()
        await self._async_dispose_protocol()
        self._set_state(ConnectState.IDLE)

    def close(self):
        """Stop the watchdog and release the socket."""
        self._stop_watchdog()
        self._dispose_protocol()

    # ========== Internals ==========

    def _load_last_mixer(self) -> Optional[MixerInfo]:
        data = self._store.get(LAST_MIXER_KEY)
        if not data:
            return None
        try:
            return MixerInfo.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            self._logger.warning(f"Ignoring stored mixer {data!r}: {e}")
            return None

    def _create_protocol(self, ip_address: str) -> MixerProtocol:
        protocol = self._protocol_factory(ip_address)
        if self._packet_listener is not None:
            protocol.add_packet_listener(self._packet_listener)
        if self._sent_listener is not None:
            protocol.add_sent_listener(self._sent_listener)
        return protocol

    async def _attempt(self, mixer: MixerInfo) -> bool:
        """Open a transport to the mixer and wait for its /xinfo reply."""
        protocol = self._create_protocol(mixer.ip_address)
        reply = await self._probe(protocol)
        if reply is None:
            await protocol.async_close()
            return False

        if reply:
            mixer = MixerInfo(mixer.ip_address, "\x00".join([INFO_ADDRESS] + [str(arg) for arg in reply]))
        self._protocol = protocol
        self._connected_mixer = mixer
        self._connected_at = time.monotonic()
        self._store.set(LAST_MIXER_KEY, mixer.to_dict())
        self._logger.info(f"Connected to {mixer.name or 'mixer'} at {mixer.ip_address}")

        self._set_state(ConnectState.CONNECTED)
        self._callback.connected()
        if self._auto_reconnect:
            self._watchdog_task = asyncio.get_running_loop().create_task(self._connection_watchdog())
        return True

    async def _probe(self, protocol: MixerProtocol) -> Optional[tuple]:
        """Arguments of the /xinfo reply, or None when the mixer did not answer in time."""
        loop = asyncio.get_running_loop()
        reply = loop.create_future()

        def on_packet(address, args, timestamp):
            if address == INFO_ADDRESS and not reply.done():
                reply.set_result(args)

        protocol.add_packet_listener(on_packet)
        try:
            # async_connect() sends the /xinfo request itself
            await protocol.async_connect()
            return await asyncio.wait_for(reply, self._probe_timeout_ms / 1000.0)
        except MixerConnectionError as e:
            self._logger.error(f"Could not open transport to {protocol.hostname}: {e}")
            self._callback.error(str(e))
            return None
        except asyncio.TimeoutError:
            self._logger.warning(f"No reply to {INFO_ADDRESS} from {protocol.hostname} within {self._probe_timeout_ms}ms")
            return None
        finally:
            protocol.remove_packet_listener(on_packet)

    def _dispose_protocol(self):
        protocol = self._protocol
        self._protocol = None
        self._connected_mixer = None
        if protocol is not None:
            protocol.close()
            self._callback.disconnected()

    async def _async_dispose_protocol(self):
        protocol = self._protocol
        self._protocol = None
        self._connected_mixer = None
        if protocol is not None:
            await protocol.async_close()
            self._callback.disconnected()

    def _stop_watchdog(self):
        task = self._watchdog_task
        self._watchdog_task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # The watchdog reconnects from inside its own task
        if task is not current:
            task.cancel()

    async def _connection_watchdog(self):
        """Reconnect when the mixer has been silent for longer than idle_timeout."""
        while True:
            try:
                await asyncio.sleep(self._watchdog_interval)
                protocol = self._protocol
                if protocol is None:
                    continue

                last_received = max(protocol.last_received_time or 0.0, self._connected_at)
                silence = time.monotonic() - last_received
                if silence > self._idle_timeout:
                    self._logger.error(f"No data from mixer for {silence:.1f}s, reconnecting...")
                    await self._async_dispose_protocol()
                    await self._wait_to_reconnect()
                    return
                if silence > self._watchdog_interval:
                    # The mixer only pushes changes; ask for something it always answers
                    protocol.send(INFO_ADDRESS)
            except asyncio.CancelledError:
                self._logger.debug("Connection watchdog cancelled")
                break
            except Exception as e:
                self._logger.error(f"Error in connection watchdog: {e}")

    async def _wait_to_reconnect(self):
        """Attempt to reconnect to the lost mixer until it answers or disconnect() is called."""
        mixer = self._target
        if mixer is None:
            return
        self._set_state(ConnectState.CONNECTING)
        while self._state == ConnectState.CONNECTING:
            await asyncio.sleep(self._reconnect_time)
            try:
                if await self._attempt(mixer):
                    return
            except Exception as e:
                self._logger.warning(f"Reconnect attempt failed: {e}")
