"""X-Air mixer session: connection, model, cache and commands wired together."""

import logging
from datetime import datetime
from typing import Optional

from pyxair.cache import MixerStateCache
from pyxair.commands import BusProxy, ChannelProxy, FxProxy, MainMixProxy, MixerCommands, MixProxy
from pyxair.connector import DEFAULT_RECONNECT_TIME, MixerConnector
from pyxair.discovery import DEFAULT_SCAN_TIMEOUT_MS, MixerScanner
from pyxair.exceptions import MixerNotConnectedError
from pyxair.listener import MixerEventListener, MultiplexingListener
from pyxair.models import ConnectState, MixerColor, MixerInfo, MixerModel, TrafficEntry
from pyxair.network import NetworkInfo
from pyxair.parser import MixerParser
from pyxair.protocol import (
    DEFAULT_CONTROL_PORT,
    DEFAULT_KEEPALIVE_SECONDS,
    DEFAULT_LOCAL_PORT,
    MixerProtocol,
)
from pyxair.storage import KeyValueStore
from pyxair.traffic import DEFAULT_MAX_ENTRIES, MixerTrafficLog


class _MixerListener(MixerEventListener):
    """Internal listener keeping the session in step with the connection."""

    def __init__(self, mixer: "XAirMixer"):
        self._mixer = mixer

    def connect_state_changed(self, state: ConnectState):
        pass

    def state_changed(self, key: str):
        pass

    def bus_updated(self, bus_index: int, name: str, color: MixerColor):
        pass

    def connected(self):
        self._mixer._on_connected()

    def disconnected(self):
        self._mixer._on_disconnected()


class XAirMixer:
    """High-level control of one X-Air mixer.

    Every received message goes to the state cache, then the model, then the
    traffic log; every sent message goes to the traffic log. External
    listeners registered here see connection, model and traffic events.

    Usage:
        mixer = XAirMixer()
        await mixer.restore() or await mixer.connect((await mixer.scan())[0])
        mixer.channel(3).set_fader(0.8)
        level = await mixer.mix(2).channel(3).get_fader_async()
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        network: Optional[NetworkInfo] = None,
        scanner: Optional[MixerScanner] = None,
        port: int = DEFAULT_CONTROL_PORT,
        local_port: int = DEFAULT_LOCAL_PORT,
        keepalive_time: float = DEFAULT_KEEPALIVE_SECONDS,
        enable_keepalive: bool = True,
        reconnect_time: float = DEFAULT_RECONNECT_TIME,
        auto_reconnect: bool = True,
        max_traffic_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self._logger = logging.getLogger(__name__)
        self._port = port
        self._local_port = local_port
        self._keepalive_time = keepalive_time
        self._enable_keepalive = enable_keepalive

        self.model = MixerModel()

        # Create multiplexing listener for external listeners
        self._multiplex_callback = MultiplexingListener()
        self._mixer_listener = _MixerListener(self)
        self._multiplex_callback.register_listener(self._mixer_listener)

        self.cache = MixerStateCache()
        self.traffic = MixerTrafficLog(self._multiplex_callback, max_traffic_entries)
        self._parser = MixerParser(self.model, self._multiplex_callback)

        self._connector = MixerConnector(
            self._multiplex_callback,
            store=store,
            network=network,
            scanner=scanner or MixerScanner(port=port),
            protocol_factory=self._create_protocol,
            packet_listener=self._packet_received,
            sent_listener=self._packet_sent,
            reconnect_time=reconnect_time,
            auto_reconnect=auto_reconnect,
        )
        self.commands = MixerCommands(self._connector.require_protocol, self.cache)

    def _create_protocol(self, hostname: str) -> MixerProtocol:
        return MixerProtocol(
            hostname,
            port=self._port,
            local_port=self._local_port,
            keepalive_time=self._keepalive_time,
            enable_keepalive=self._enable_keepalive,
        )

    # ========== Packet flow ==========

    def _packet_received(self, address: str, args: tuple, rx_time: datetime):
        self.cache.observe(address, args)
        handled, parse_start, parse_end = self._parser.apply_timed(address, args)
        self.traffic.add_rx(address, args, handled, rx_time, parse_start, parse_end)

    def _packet_sent(self, address: str, args: tuple, timestamp: datetime):
        self.traffic.add_tx(address, args, timestamp)

    # ========== Connection lifecycle handlers ==========

    def _on_connected(self):
        mixer = self._connector.connected_mixer
        if mixer is None:
            return
        if self.model.ip_address != mixer.ip_address:
            self.cache.clear()

        self.model.configure(mixer.mixer_type, mixer.name, mixer.firmware)
        self.model.info.ip_address = mixer.ip_address
        self.model.ip_address = mixer.ip_address
        self.model.is_connected = True
        self._logger.info(
            f"Mixer connected: {self.model.info.mixer_type} with "
            f"{self.model.info.channel_count} channels and {self.model.info.bus_count} busses"
        )

        try:
            self.commands.request_full_refresh(self.model.info.channel_count, self.model.info.bus_count)
        except MixerNotConnectedError as e:
            self._logger.warning(f"Initial refresh interrupted: {e}")

    def _on_disconnected(self):
        self._logger.info("Mixer disconnected")
        self.model.is_connected = False

    # ========== Public API ==========

    def register_listener(self, listener: MixerEventListener):
        self._multiplex_callback.register_listener(listener)

    def unregister_listener(self, listener: MixerEventListener):
        self._multiplex_callback.unregister_listener(listener)

    @property
    def state(self) -> ConnectState:
        return self._connector.state

    @property
    def connected(self) -> bool:
        return self._connector.state == ConnectState.CONNECTED

    @property
    def found_mixers(self) -> list[MixerInfo]:
        return self._connector.found_mixers

    @property
    def connected_mixer(self) -> Optional[MixerInfo]:
        return self._connector.connected_mixer

    @property
    def traffic_entries(self) -> list[TrafficEntry]:
        return self.traffic.entries

    async def restore(self) -> bool:
        return await self._connector.restore()

    async def scan(self, timeout_ms: int = DEFAULT_SCAN_TIMEOUT_MS) -> list[MixerInfo]:
        return await self._connector.scan(timeout_ms)

    async def connect(self, mixer: MixerInfo) -> bool:
        return await self._connector.connect(mixer)

    async def connect_manual(self, ip_address: str) -> bool:
        return await self._connector.connect_manual(ip_address)

    async def retry(self) -> bool:
        return await self._connector.retry()

    async def disconnect(self):
        await self._connector.disconnect()

    def close(self):
        self._connector.close()

    def main(self) -> MainMixProxy:
        return self.commands.main()

    def mix(self, bus: int) -> MixProxy:
        return self.commands.mix(bus)

    def bus(self, index: int) -> BusProxy:
        return self.commands.bus(index)

    def fx(self, index: int) -> FxProxy:
        return self.commands.fx(index)

    def channel(self, ch: int) -> ChannelProxy:
        return self.commands.channel(ch)
