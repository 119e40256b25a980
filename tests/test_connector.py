import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import LoopbackMixer, free_udp_port
from pyxair.connector import MixerConnector
from pyxair.exceptions import MixerNotConnectedError
from pyxair.models import ConnectState, MixerInfo
from pyxair.network import StaticNetworkInfo
from pyxair.protocol import MixerProtocol
from pyxair.storage import LAST_MIXER_KEY, MemoryStore

XR18 = MixerInfo("192.168.1.50", "X-Air XR18 1.15 18 6")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def scanner():
    fake = Mock()
    fake.scan = AsyncMock(return_value=[])
    return fake


@pytest.fixture
def make_connector(listener, store, scanner, protocol_factory):
    def factory(local_address="192.168.1.20", **kwargs):
        kwargs.setdefault("auto_reconnect", False)
        kwargs.setdefault("probe_timeout_ms", 50)
        return MixerConnector(
            listener,
            store=store,
            network=StaticNetworkInfo(local_address),
            scanner=scanner,
            protocol_factory=protocol_factory,
            **kwargs,
        )
    return factory


class TestRestore:

    @pytest.mark.asyncio
    async def test_nothing_remembered_requires_scan(self, make_connector, listener, protocol_factory):
        connector = make_connector()

        assert await connector.restore() is False

        assert connector.state == ConnectState.SCAN_REQUIRED
        assert listener.states == [ConnectState.SCAN_REQUIRED]
        assert protocol_factory.created == []

    @pytest.mark.asyncio
    async def test_subnet_mismatch_opens_no_socket(self, make_connector, store, listener, protocol_factory):
        store.set(LAST_MIXER_KEY, MixerInfo("10.0.0.5").to_dict())
        connector = make_connector(local_address="192.168.1.20")

        assert await connector.restore() is False

        assert connector.state == ConnectState.WIFI_MISMATCH
        assert listener.states == [ConnectState.CONNECTING, ConnectState.WIFI_MISMATCH]
        assert protocol_factory.created == []

    @pytest.mark.asyncio
    async def test_no_active_interface_is_a_mismatch(self, make_connector, store, protocol_factory):
        store.set(LAST_MIXER_KEY, XR18.to_dict())
        connector = make_connector(local_address=None)

        assert await connector.restore() is False

        assert connector.state == ConnectState.WIFI_MISMATCH
        assert protocol_factory.created == []

    @pytest.mark.asyncio
    async def test_remembered_mixer_connects(self, make_connector, store, listener, protocol_factory):
        store.set(LAST_MIXER_KEY, XR18.to_dict())
        connector = make_connector()

        assert await connector.restore() is True

        assert connector.state == ConnectState.CONNECTED
        assert listener.states == [ConnectState.CONNECTING, ConnectState.CONNECTED]
        assert listener.connected_count == 1
        assert connector.require_protocol() is protocol_factory.last
        assert protocol_factory.last.sent_addresses() == ["/xremote", "/xinfo"]

    @pytest.mark.asyncio
    async def test_silent_mixer_requires_scan(self, make_connector, store, protocol_factory):
        store.set(LAST_MIXER_KEY, XR18.to_dict())
        protocol_factory.reply = None
        connector = make_connector()

        assert await connector.restore() is False

        assert connector.state == ConnectState.SCAN_REQUIRED
        assert protocol_factory.last.closed is True
        with pytest.raises(MixerNotConnectedError):
            connector.require_protocol()

    @pytest.mark.asyncio
    async def test_corrupt_stored_mixer_requires_scan(self, make_connector, store):
        store.set(LAST_MIXER_KEY, {"name": "no address"})
        connector = make_connector()

        assert await connector.restore() is False
        assert connector.state == ConnectState.SCAN_REQUIRED


class TestScan:

    @pytest.mark.asyncio
    async def test_mixers_found(self, make_connector, scanner, listener):
        scanner.scan.return_value = [XR18]
        connector = make_connector()

        assert await connector.scan(1000) == [XR18]

        scanner.scan.assert_awaited_once_with(1000)
        assert connector.state == ConnectState.MIXERS_FOUND
        assert connector.found_mixers == [XR18]
        assert listener.states == [ConnectState.SCAN_REQUIRED, ConnectState.MIXERS_FOUND]

    @pytest.mark.asyncio
    async def test_no_mixer_found(self, make_connector):
        connector = make_connector()

        assert await connector.scan() == []
        assert connector.state == ConnectState.NO_MIXER_FOUND


class TestConnect:

    @pytest.mark.asyncio
    async def test_connect_remembers_mixer(self, make_connector, store):
        connector = make_connector()

        assert await connector.connect(XR18) is True

        assert MixerInfo.from_dict(store.get(LAST_MIXER_KEY)).ip_address == "192.168.1.50"

    @pytest.mark.asyncio
    async def test_connected_mixer_uses_xinfo_reply(self, make_connector):
        connector = make_connector()

        await connector.connect(MixerInfo("192.168.1.50"))

        mixer = connector.connected_mixer
        assert mixer.name == "XR18-0A-0B-0C"
        assert mixer.mixer_type == "XR18"
        assert mixer.firmware == "1.15"

    @pytest.mark.asyncio
    async def test_connected_mixer_name_with_spaces(self, make_connector, protocol_factory):
        protocol_factory.reply = ("192.168.1.50", "Band Mixer", "XR18", "1.15")
        connector = make_connector()

        await connector.connect(MixerInfo("192.168.1.50"))

        mixer = connector.connected_mixer
        assert mixer.name == "Band Mixer"
        assert mixer.mixer_type == "XR18"
        assert mixer.firmware == "1.15"

    @pytest.mark.asyncio
    async def test_reconnect_replaces_protocol(self, make_connector, listener, protocol_factory):
        connector = make_connector()
        await connector.connect(XR18)
        first = protocol_factory.last

        await connector.connect(XR18)

        assert first.closed is True
        assert connector.require_protocol() is protocol_factory.last
        assert connector.require_protocol() is not first
        assert listener.disconnected_count == 1

    @pytest.mark.asyncio
    async def test_bind_failure(self, make_connector, listener, protocol_factory):
        protocol_factory.fail_bind = True
        connector = make_connector()

        assert await connector.connect(XR18) is False

        assert connector.state == ConnectState.SCAN_REQUIRED
        assert len(listener.errors) == 1

    @pytest.mark.asyncio
    async def test_manual_entry(self, make_connector, listener):
        connector = make_connector()

        assert await connector.connect_manual(" 192.168.1.50 ") is True

        assert listener.states == [ConnectState.MANUAL_ENTRY, ConnectState.CONNECTING, ConnectState.CONNECTED]
        assert connector.connected_mixer.ip_address == "192.168.1.50"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", ["mixer.local", "192.168.1", "192.168.1.256", ""])
    async def test_manual_entry_rejects_invalid_address(self, make_connector, protocol_factory, address):
        connector = make_connector()

        with pytest.raises(ValueError):
            await connector.connect_manual(address)

        assert connector.state == ConnectState.IDLE
        assert protocol_factory.created == []

    @pytest.mark.asyncio
    async def test_retry_after_network_change(self, listener, store, scanner, protocol_factory):
        network = Mock()
        network.local_ipv4.return_value = "10.0.0.7"
        connector = MixerConnector(listener, store=store, network=network, scanner=scanner,
                                   protocol_factory=protocol_factory, auto_reconnect=False)
        assert await connector.connect(XR18) is False
        assert connector.state == ConnectState.WIFI_MISMATCH

        network.local_ipv4.return_value = "192.168.1.20"

        assert await connector.retry() is True
        assert connector.state == ConnectState.CONNECTED
        network.local_ipv4.assert_called_with("192.168.1.50")

    @pytest.mark.asyncio
    async def test_retry_without_target(self, make_connector):
        connector = make_connector()

        assert await connector.retry() is False
        assert connector.state == ConnectState.SCAN_REQUIRED

    @pytest.mark.asyncio
    async def test_disconnect(self, make_connector, listener, protocol_factory):
        connector = make_connector()
        await connector.connect(XR18)

        await connector.disconnect()

        assert connector.state == ConnectState.IDLE
        assert protocol_factory.last.closed is True
        assert listener.disconnected_count == 1
        with pytest.raises(MixerNotConnectedError):
            connector.require_protocol()


class TestWatchdog:

    @pytest.mark.asyncio
    async def test_silent_mixer_is_reconnected(self, make_connector, listener, protocol_factory):
        connector = make_connector(
            auto_reconnect=True, watchdog_interval=0.01, idle_timeout=0.05, reconnect_time=0.01,
        )
        try:
            await connector.connect(XR18)
            first = protocol_factory.last

            for _ in range(100):
                await asyncio.sleep(0.01)
                if len(protocol_factory.created) > 1 and connector.state == ConnectState.CONNECTED:
                    break

            assert first.closed is True
            # Silence was first answered with /xinfo pings
            assert first.sent_addresses().count("/xinfo") > 1
            assert len(protocol_factory.created) > 1
            assert connector.state == ConnectState.CONNECTED
            assert ConnectState.CONNECTING in listener.states[2:]
        finally:
            await connector.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_stops_reconnecting(self, make_connector, protocol_factory):
        protocol_factory.reply = None
        connector = make_connector(auto_reconnect=True, reconnect_time=0.01)

        await connector.connect(XR18)
        await connector.disconnect()
        await asyncio.sleep(0.05)

        assert len(protocol_factory.created) == 1
        assert connector.state == ConnectState.IDLE


class TestLoopbackReconnect:

    @pytest.mark.asyncio
    async def test_repeated_connects_rebind_fixed_local_port(self, listener):
        mixer = LoopbackMixer()
        mixer_port = await mixer.start()
        local_port = free_udp_port()

        def protocol_factory(hostname):
            return MixerProtocol(hostname, port=mixer_port, local_port=local_port, enable_keepalive=False)

        connector = MixerConnector(
            listener,
            store=MemoryStore(),
            network=StaticNetworkInfo("127.0.0.1"),
            protocol_factory=protocol_factory,
            probe_timeout_ms=1000,
            auto_reconnect=False,
        )
        try:
            assert await connector.connect(MixerInfo("127.0.0.1")) is True
            assert await connector.connect(MixerInfo("127.0.0.1")) is True
            assert await connector.retry() is True
            assert await connector.connect_manual("127.0.0.1") is True

            assert connector.state == ConnectState.CONNECTED
            assert connector.require_protocol().local_port == local_port
            assert connector.connected_mixer.name == "XR18-TEST"
            assert listener.errors == []
            assert listener.connected_count == 4
        finally:
            await connector.disconnect()
            mixer.stop()
