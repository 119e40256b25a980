"""Apply OSC messages pushed by the mixer to the MixerModel.

Addresses are matched segment by segment against a fixed route table.
Anything that does not match, has bad indices or carries no arguments is
reported as not handled and leaves the model untouched, so addresses added
by newer firmware are harmless.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pyxair.listener import MixerEventListener
from pyxair.models import MixerColor, MixerModel

_INDEX = None  # placeholder segment in a route pattern

# Route handler: (address, indices, first argument) -> handled
RouteHandler = Callable[[str, list[int], Any], bool]


def to_float(value: Any) -> Optional[float]:
    """Coerce whatever the mixer sent into a finite float, or None."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def normalize_fader(value: Any) -> Optional[float]:
    """Faders and send levels are normalised floats, clamped to 0.0-1.0."""
    result = to_float(value)
    if result is None:
        return None
    return min(max(result, 0.0), 1.0)


def to_mute(value: Any) -> Optional[bool]:
    """An /on value below 0.5 means the strip is switched off, i.e. muted."""
    if isinstance(value, str) and value.strip().upper() in ("ON", "OFF"):
        return value.strip().upper() == "OFF"
    result = to_float(value)
    if result is None:
        return None
    return result < 0.5


def parse_index(segment: str) -> Optional[int]:
    if not segment.isascii() or not segment.isdigit():
        return None
    index = int(segment)
    return index if index > 0 else None


def split_address(address: str) -> Optional[list[str]]:
    if not isinstance(address, str) or not address.startswith("/"):
        return None
    segments = address[1:].split("/")
    if any(not segment for segment in segments):
        return None
    return segments


class MixerParser:
    """Routes incoming messages into MixerModel fields."""

    def __init__(self, model: MixerModel, callback: MixerEventListener):
        self._logger = logging.getLogger(__name__)
        self._model = model
        self._callback = callback
        self._routes: dict[int, list[tuple[tuple, RouteHandler]]] = {}

        self._add_route("/ch/{}/mix/fader", self._channel_fader)
        self._add_route("/ch/{}/mix/on", self._channel_on)
        self._add_route("/ch/{}/mix/{}/level", self._channel_send_level)
        self._add_route("/ch/{}/mix/{}/on", self._channel_send_on)
        self._add_route("/ch/{}/preamp/gain", self._channel_gain)
        self._add_route("/ch/{}/config/name", self._channel_name)
        self._add_route("/ch/{}/config/color", self._channel_color)
        self._add_route("/bus/{}/mix/fader", self._bus_fader)
        self._add_route("/bus/{}/mix/on", self._bus_on)
        self._add_route("/bus/{}/config/name", self._bus_name)
        self._add_route("/bus/{}/config/color", self._bus_color)
        self._add_route("/fxr/{}/mix/fader", self._fx_fader)
        self._add_route("/fxr/{}/mix/on", self._fx_on)
        self._add_route("/lr/mix/fader", self._main_fader)
        self._add_route("/lr/mix/on", self._main_on)

    def _add_route(self, pattern: str, handler: RouteHandler):
        segments = tuple(_INDEX if part == "{}" else part for part in pattern[1:].split("/"))
        routes = self._routes.setdefault(len(segments), [])
        routes.append((segments, handler))
        # Most literal segments first so the most specific pattern wins
        routes.sort(key=lambda route: sum(part is not _INDEX for part in route[0]), reverse=True)

    @staticmethod
    def _match(pattern: tuple, segments: list[str]) -> Optional[list[int]]:
        indices = []
        for expected, actual in zip(pattern, segments):
            if expected is _INDEX:
                index = parse_index(actual)
                if index is None:
                    return None
                indices.append(index)
            elif expected != actual:
                return None
        return indices

    def apply(self, address: str, args) -> bool:
        """Apply one message. Returns whether it changed the model."""
        if not args:
            return False
        segments = split_address(address)
        if segments is None:
            return False
        for pattern, handler in self._routes.get(len(segments), ()):
            indices = self._match(pattern, segments)
            if indices is None:
                continue
            handled = handler(address, indices, args[0])
            if not handled:
                self._logger.debug(f"Ignoring {address} {list(args)}: index or value out of range")
            return handled
        self._logger.debug(f"Unhandled message received: {address}")
        return False

    def apply_timed(self, address: str, args) -> tuple[bool, datetime, datetime]:
        """Like apply() but also returns the parse start/end times for the traffic log."""
        parse_start = datetime.now(timezone.utc)
        handled = self.apply(address, args)
        parse_end = datetime.now(timezone.utc)
        return handled, parse_start, parse_end

    def _changed(self, address: str) -> bool:
        self._callback.state_changed(address)
        return True

    # ========== Channels ==========

    def _channel_fader(self, address, indices, value) -> bool:
        channel = self._model.get_channel(indices[0])
        fader = normalize_fader(value)
        if channel is None or fader is None:
            return False
        channel._fader = fader
        return self._changed(address)

    def _channel_on(self, address, indices, value) -> bool:
        channel = self._model.get_channel(indices[0])
        mute = to_mute(value)
        if channel is None or mute is None:
            return False
        channel._mute = mute
        return self._changed(address)

    def _channel_send_level(self, address, indices, value) -> bool:
        channel = self._model.get_channel(indices[0])
        level = normalize_fader(value)
        if channel is None or level is None:
            return False
        send = channel._get_or_create_send(indices[1])
        send._level = level
        send._level_received = True
        return self._changed(address)

    def _channel_send_on(self, address, indices, value) -> bool:
        channel = self._model.get_channel(indices[0])
        mute = to_mute(value)
        if channel is None or mute is None:
            return False
        send = channel._get_or_create_send(indices[1])
        send._mute = mute
        send._mute_received = True
        return self._changed(address)

    def _channel_gain(self, address, indices, value) -> bool:
        channel = self._model.get_channel(indices[0])
        gain = to_float(value)
        if channel is None or gain is None:
            return False
        channel._gain = gain
        return self._changed(address)

    def _channel_name(self, address, indices, value) -> bool:
        channel = self._model.get_channel(indices[0])
        if channel is None:
            return False
        channel._name = str(value)
        return self._changed(address)

    def _channel_color(self, address, indices, value) -> bool:
        channel = self._model.get_channel(indices[0])
        if channel is None:
            return False
        channel._color = MixerColor.from_wire(value)
        return self._changed(address)

    # ========== Busses ==========

    def _bus_fader(self, address, indices, value) -> bool:
        bus = self._model.get_bus(indices[0])
        fader = normalize_fader(value)
        if bus is None or fader is None:
            return False
        bus._fader = fader
        return self._changed(address)

    def _bus_on(self, address, indices, value) -> bool:
        bus = self._model.get_bus(indices[0])
        mute = to_mute(value)
        if bus is None or mute is None:
            return False
        bus._mute = mute
        return self._changed(address)

    def _bus_name(self, address, indices, value) -> bool:
        bus = self._model.get_bus(indices[0])
        if bus is None:
            return False
        bus._name = str(value)
        self._callback.bus_updated(bus.index, bus.name, bus.color)
        return self._changed(address)

    def _bus_color(self, address, indices, value) -> bool:
        bus = self._model.get_bus(indices[0])
        if bus is None:
            return False
        bus._color = MixerColor.from_wire(value)
        self._callback.bus_updated(bus.index, bus.name, bus.color)
        return self._changed(address)

    # ========== FX returns and main ==========

    def _fx_fader(self, address, indices, value) -> bool:
        fx = self._model.get_fx_return(indices[0])
        fader = normalize_fader(value)
        if fx is None or fader is None:
            return False
        fx._fader = fader
        return self._changed(address)

    def _fx_on(self, address, indices, value) -> bool:
        fx = self._model.get_fx_return(indices[0])
        mute = to_mute(value)
        if fx is None or mute is None:
            return False
        fx._mute = mute
        return self._changed(address)

    def _main_fader(self, address, indices, value) -> bool:
        fader = normalize_fader(value)
        if fader is None:
            return False
        self._model.main._fader = fader
        return self._changed(address)

    def _main_on(self, address, indices, value) -> bool:
        mute = to_mute(value)
        if mute is None:
            return False
        self._model.main._mute = mute
        return self._changed(address)
