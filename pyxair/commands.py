"""Address building and reads on top of the fire-and-forget protocol.

The mixer never acknowledges anything, so every setter is a single datagram
and every getter is emulated: send the address without arguments, wait for
the mixer to push the value back, and fall back to the last value seen when
it does not arrive in time.

Reads are correlated by address only. Two concurrent reads of the same
address are both satisfied by the first reply, and a push caused by
somebody else moving the fader also satisfies a pending read.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from pyxair.cache import MixerStateCache
from pyxair.exceptions import MixerNotConnectedError
from pyxair.models import FX_RETURN_COUNT, MixerColor
from pyxair.parser import normalize_fader, to_mute
from pyxair.protocol import MixerProtocol

DEFAULT_READ_TIMEOUT_MS = 800

ProtocolProvider = Callable[[], MixerProtocol]


def _mute_arg(muted: bool) -> int:
    # /on is "switched on", so a muted strip is 0
    return 0 if muted else 1


def _check_index(kind: str, index: int, maximum: Optional[int] = None):
    if isinstance(index, bool) or not isinstance(index, int) or index < 1:
        raise ValueError(f"{kind} index must be a positive integer, got {index!r}")
    if maximum is not None and index > maximum:
        raise ValueError(f"{kind} index must be between 1 and {maximum}, got {index}")


class MixerCommands:
    """Entry point for building proxies. Every send goes through the provider's live protocol."""

    def __init__(self, protocol_provider: ProtocolProvider, cache: MixerStateCache):
        self._logger = logging.getLogger(__name__)
        self._protocol_provider = protocol_provider
        self._cache = cache

    @property
    def cache(self) -> MixerStateCache:
        return self._cache

    def main(self) -> "MainMixProxy":
        return MainMixProxy(self)

    def mix(self, bus: int) -> "MixProxy":
        _check_index("Bus", bus)
        return MixProxy(self, bus)

    def bus(self, index: int) -> "BusProxy":
        _check_index("Bus", index)
        return BusProxy(self, index)

    def fx(self, index: int) -> "FxProxy":
        _check_index("FX return", index, FX_RETURN_COUNT)
        return FxProxy(self, index)

    def channel(self, ch: int) -> "ChannelProxy":
        """Channel on the main mix."""
        return self.main().channel(ch)

    def initialize_busses(self, max_bus: int):
        """Ask the mixer for the name and color of busses 1..max_bus."""
        for index in range(1, max_bus + 1):
            bus = self.bus(index)
            bus.request_name()
            bus.request_color()

    def request_full_refresh(self, channel_count: int, bus_count: int):
        """Ask for the fader and mute of every strip plus the bus labels."""
        for ch in range(1, channel_count + 1):
            self.channel(ch).request_refresh()
        for index in range(1, bus_count + 1):
            self.bus(index).request_refresh()
        self.initialize_busses(bus_count)
        self.main().request_refresh()
        for index in range(1, FX_RETURN_COUNT + 1):
            self.fx(index).request_refresh()

    # ========== Send / read ==========

    def _send(self, address: str, *args):
        """Raises MixerNotConnectedError when there is no connection."""
        self._protocol_provider().send(address, *args)

    async def _read(
        self,
        address: str,
        timeout_ms: int,
        convert: Callable[[Any], Any],
        cached: Callable[[str], Any],
        default: Any,
    ):
        loop = asyncio.get_running_loop()
        reply = loop.create_future()

        def on_packet(packet_address, args, timestamp):
            if packet_address != address or not args or reply.done():
                return
            value = convert(args[0])
            if value is not None:
                reply.set_result(value)

        try:
            protocol = self._protocol_provider()
        except MixerNotConnectedError as e:
            self._logger.warning(f"Reading {address} while disconnected: {e}")
            return self._fallback(address, cached, default)

        protocol.add_packet_listener(on_packet)
        try:
            protocol.send(address)
            return await asyncio.wait_for(reply, timeout_ms / 1000.0)
        except MixerNotConnectedError as e:
            self._logger.warning(f"Reading {address} while disconnected: {e}")
        except asyncio.TimeoutError:
            self._logger.debug(f"No reply for {address} within {timeout_ms}ms, using cached value")
        finally:
            protocol.remove_packet_listener(on_packet)
        return self._fallback(address, cached, default)

    @staticmethod
    def _fallback(address: str, cached: Callable[[str], Any], default: Any):
        value = cached(address)
        return default if value is None else value

    async def read_fader(self, address: str, timeout_ms: int = DEFAULT_READ_TIMEOUT_MS) -> float:
        return await self._read(address, timeout_ms, normalize_fader, self._cache.get_fader, 0.0)

    async def read_mute(self, address: str, timeout_ms: int = DEFAULT_READ_TIMEOUT_MS) -> bool:
        return await self._read(address, timeout_ms, to_mute, self._cache.get_mute, False)


class _StripProxy:
    """Fader and mute of anything with a /.../fader-like and /.../on address."""

    def __init__(self, commands: MixerCommands, fader_address: str, mute_address: str):
        self._commands = commands
        self._fader_address = fader_address
        self._mute_address = mute_address

    @property
    def fader_address(self) -> str:
        return self._fader_address

    @property
    def mute_address(self) -> str:
        return self._mute_address

    def set_fader(self, value: float):
        """Set the fader, 0.0 to 1.0. Out of range values are clamped.

        Raises:
            ValueError: value is not a number.
        """
        fader = normalize_fader(value)
        if fader is None:
            raise ValueError(f"Fader value must be a number, got {value!r}")
        self._commands._send(self._fader_address, fader)

    def set_mute(self, muted: bool):
        self._commands._send(self._mute_address, _mute_arg(muted))

    def request_refresh(self):
        self._commands._send(self._fader_address)
        self._commands._send(self._mute_address)

    async def get_fader_async(self, timeout_ms: int = DEFAULT_READ_TIMEOUT_MS) -> float:
        return await self._commands.read_fader(self._fader_address, timeout_ms)

    async def get_mute_async(self, timeout_ms: int = DEFAULT_READ_TIMEOUT_MS) -> bool:
        return await self._commands.read_mute(self._mute_address, timeout_ms)


class ChannelProxy(_StripProxy):
    """A channel on the main mix (bus None) or its send to a mix bus."""

    def __init__(self, commands: MixerCommands, ch: int, bus: Optional[int] = None):
        _check_index("Channel", ch)
        if bus is None:
            super().__init__(commands, f"/ch/{ch:02d}/mix/fader", f"/ch/{ch:02d}/mix/on")
        else:
            _check_index("Bus", bus)
            super().__init__(commands, f"/ch/{ch:02d}/mix/{bus:02d}/level", f"/ch/{ch:02d}/mix/{bus:02d}/on")
        self._ch = ch
        self._bus = bus

    @property
    def ch(self) -> int:
        return self._ch

    @property
    def bus(self) -> Optional[int]:
        return self._bus

    def set_color(self, color: MixerColor):
        # Color belongs to the channel strip, not to one of its sends
        self._commands._send(f"/ch/{self._ch:02d}/config/color", color.wire_value)


class MixProxy:
    """A mix bus seen from the channels sending to it."""

    def __init__(self, commands: MixerCommands, bus: int):
        self._commands = commands
        self._bus = bus

    @property
    def bus(self) -> int:
        return self._bus

    def channel(self, ch: int) -> ChannelProxy:
        return ChannelProxy(self._commands, ch, self._bus)


class MainMixProxy(_StripProxy):
    """The main LR mix: its own fader and mute, plus the channels on it."""

    def __init__(self, commands: MixerCommands):
        super().__init__(commands, "/lr/mix/fader", "/lr/mix/on")

    def channel(self, ch: int) -> ChannelProxy:
        return ChannelProxy(self._commands, ch)


class BusProxy(_StripProxy):
    """A mix bus master: fader, mute, name and color."""

    def __init__(self, commands: MixerCommands, index: int):
        super().__init__(commands, f"/bus/{index:02d}/mix/fader", f"/bus/{index:02d}/mix/on")
        self._index = index
        self._name_address = f"/bus/{index:02d}/config/name"
        self._color_address = f"/bus/{index:02d}/config/color"

    @property
    def index(self) -> int:
        return self._index

    def set_name(self, name: str):
        self._commands._send(self._name_address, str(name))

    def set_color(self, color: MixerColor):
        self._commands._send(self._color_address, color.wire_value)

    def request_name(self):
        self._commands._send(self._name_address)

    def request_color(self):
        self._commands._send(self._color_address)

    def channel(self, ch: int) -> ChannelProxy:
        return self._commands.mix(self._index).channel(ch)


class FxProxy(_StripProxy):

    def __init__(self, commands: MixerCommands, index: int):
        super().__init__(commands, f"/fxr/{index}/mix/fader", f"/fxr/{index}/mix/on")
        self._index = index

    @property
    def index(self) -> int:
        return self._index
