import logging
import threading
from typing import Optional

from pyxair.models import MixerColor
from pyxair.parser import normalize_fader, parse_index, split_address, to_mute


def _is_send(segments: list[str], leaf: str) -> bool:
    return (
        len(segments) >= 3
        and segments[-3] == "mix"
        and segments[-1] == leaf
        and parse_index(segments[-2]) is not None
    )


class MixerStateCache:
    """Last value seen for every fader, mute and bus label, by OSC address.

    Fed with every received message. Only used as a fallback when a read
    request times out: the protocol cannot tell whether a cached value is
    older than a write still in flight.
    """

    def __init__(self):
        self._logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._faders: dict[str, float] = {}
        self._mutes: dict[str, bool] = {}
        self._bus_names: dict[int, str] = {}
        self._bus_colors: dict[int, MixerColor] = {}

    def observe(self, address: str, args):
        """Record one received message. Never raises."""
        try:
            self._observe(address, args)
        except Exception as e:
            self._logger.error(f"Failed to cache {address}: {e}", exc_info=True)

    def _observe(self, address: str, args):
        if not args:
            return
        segments = split_address(address)
        if segments is None:
            return
        value = args[0]

        # Faders: /ch/01/mix/fader, /lr/mix/fader or send levels /ch/01/mix/01/level
        if address.endswith("/mix/fader") or _is_send(segments, "level"):
            fader = normalize_fader(value)
            if fader is not None:
                with self._lock:
                    self._faders[address] = fader
            return

        # Mutes: /ch/01/mix/on or /ch/01/mix/01/on
        if address.endswith("/mix/on") or _is_send(segments, "on"):
            mute = to_mute(value)
            if mute is not None:
                with self._lock:
                    self._mutes[address] = mute
            return

        # Bus labels: /bus/01/config/name, /bus/01/config/color
        if len(segments) == 4 and segments[0] == "bus" and segments[2] == "config":
            bus_index = parse_index(segments[1])
            if bus_index is None:
                return
            if segments[3] == "name":
                with self._lock:
                    self._bus_names[bus_index] = str(value)
            elif segments[3] == "color":
                with self._lock:
                    self._bus_colors[bus_index] = MixerColor.from_wire(value)

    def get_fader(self, address: str) -> Optional[float]:
        with self._lock:
            return self._faders.get(address)

    def get_mute(self, address: str) -> Optional[bool]:
        with self._lock:
            return self._mutes.get(address)

    def get_bus_name(self, bus_index: int) -> Optional[str]:
        with self._lock:
            return self._bus_names.get(bus_index)

    def get_bus_color(self, bus_index: int) -> Optional[MixerColor]:
        with self._lock:
            return self._bus_colors.get(bus_index)

    @property
    def bus_names(self) -> dict[int, str]:
        with self._lock:
            return dict(self._bus_names)

    @property
    def bus_colors(self) -> dict[int, MixerColor]:
        with self._lock:
            return dict(self._bus_colors)

    def clear(self):
        with self._lock:
            self._faders.clear()
            self._mutes.clear()
            self._bus_names.clear()
            self._bus_colors.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._faders) + len(self._mutes) + len(self._bus_names) + len(self._bus_colors)

