"""Domain objects for the X-Air mixer state.

The model is populated by MixerParser from messages the mixer pushes; the
properties here are read-only for everybody else.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

# Channel and bus counts per supported mixer type (lower-case type name).
MIXER_LAYOUTS: dict[str, tuple[int, int]] = {
    "xr12": (12, 2),
    "xr16": (16, 4),
    "xr18": (18, 6),
    "x18": (18, 6),
    "mr18": (18, 6),
}
DEFAULT_MIXER_TYPE = "xr16"

FX_RETURN_COUNT = 2


class MixerColor(Enum):
    """Scribble strip colors the mixer supports, as (wire value, display hex)."""

    RED = (1, "#FF0000")
    GREEN = (2, "#00FF00")
    YELLOW = (3, "#FFFF00")
    BLUE = (4, "#0000FF")
    MAGENTA = (5, "#FF00FF")
    WHITE = (6, "#FFFFFF")

    def __init__(self, wire_value: int, hex_code: str):
        self.wire_value = wire_value
        self.hex_code = hex_code

    @classmethod
    def default(cls) -> "MixerColor":
        return cls.RED

    @classmethod
    def from_wire(cls, value: Any) -> "MixerColor":
        """Map a wire value to a color. Unknown or garbage values give the default."""
        try:
            wire_value = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return cls.default()
        return _COLORS_BY_WIRE.get(wire_value, cls.default())

    @classmethod
    def from_name(cls, name: Optional[str]) -> "MixerColor":
        if name is None:
            return cls.default()
        return cls.__members__.get(str(name).strip().upper(), cls.default())


_COLORS_BY_WIRE: dict[int, MixerColor] = {color.wire_value: color for color in MixerColor}


class ConnectState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SCAN_REQUIRED = "scan_required"
    MIXERS_FOUND = "mixers_found"
    NO_MIXER_FOUND = "no_mixer_found"
    WIFI_MISMATCH = "wifi_mismatch"
    MANUAL_ENTRY = "manual_entry"


# Identification replies are padded with NULs; OSC type tags start with ','.
_TOKEN_SPLIT = re.compile(r"[\s\x00]+")


def _is_identification_noise(text: str) -> bool:
    return not text or text.startswith(",") or text.lower() == "/xinfo"


def _identification_tokens(raw: str) -> list[str]:
    return [token for token in _TOKEN_SPLIT.split(raw or "") if not _is_identification_noise(token)]


def _reply_fields(raw: str) -> list[str]:
    """OSC reply arguments joined with NUL. Spaces inside an argument are kept."""
    fields = [part.strip() for part in (raw or "").split("\x00")]
    return [part for part in fields if not _is_identification_noise(part)]


def _ip_layout(raw: str) -> Optional[list[Optional[str]]]:
    """[name, type, firmware] of an /xinfo reply led by the mixer's IP, else None."""
    fields = _reply_fields(raw)
    if len(fields) > 1 and _is_ipv4(fields[0]):
        values = fields[1:4]
    else:
        tokens = _identification_tokens(raw)
        if not tokens or not _is_ipv4(tokens[0]):
            return None
        if len(tokens) > 4:
            # Space-joined reply: only the name may contain spaces
            values = [" ".join(tokens[1:-2]), tokens[-2], tokens[-1]]
        else:
            values = tokens[1:4]
    return values + [None] * (3 - len(values))


def _is_ipv4(text: str) -> bool:
    try:
        ipaddress.IPv4Address(text)
    except ValueError:
        return False
    return True


def _parse_count(text: Optional[str]) -> Optional[int]:
    if text is None:
        return None
    try:
        return int(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class MixerInfo:
    """A mixer found on the network: its address plus the raw /xinfo reply.

    Everything else is derived from the reply on demand. Two reply layouts
    are understood:

    - OSC reply arguments, NUL-joined so names may hold spaces:
      ``192.168.1.50\x00Band Mixer\x00XR18\x001.15``
    - plain text: ``X-Air XR18 1.15 18 6``

    Short or malformed replies give partial info (None fields), never errors.
    """

    ip_address: str
    raw_response: str = ""

    @property
    def _tokens(self) -> list[str]:
        return _identification_tokens(self.raw_response)

    @property
    def _ip_fields(self) -> Optional[list[Optional[str]]]:
        return _ip_layout(self.raw_response)

    def _token(self, index: int) -> Optional[str]:
        tokens = self._tokens
        return tokens[index] if index < len(tokens) else None

    @property
    def name(self) -> Optional[str]:
        ip_fields = self._ip_fields
        if ip_fields is not None:
            return ip_fields[0]
        tokens = self._tokens
        if len(tokens) >= 2:
            return f"{tokens[0]} {tokens[1]}"
        return tokens[0] if tokens else None

    @property
    def mixer_type(self) -> Optional[str]:
        ip_fields = self._ip_fields
        return ip_fields[1] if ip_fields is not None else self._token(1)

    @property
    def firmware(self) -> Optional[str]:
        ip_fields = self._ip_fields
        return ip_fields[2] if ip_fields is not None else self._token(2)

    @property
    def channel_count(self) -> Optional[int]:
        if self._ip_fields is None:
            count = _parse_count(self._token(3))
            if count is not None:
                return count
        layout = MIXER_LAYOUTS.get((self.mixer_type or "").lower())
        return layout[0] if layout else None

    @property
    def bus_count(self) -> Optional[int]:
        if self._ip_fields is None:

            count = _parse_count(self._token(4))
            if count is not None:
                return count
        layout = MIXER_LAYOUTS.get((self.mixer_type or "").lower())
        return layout[1] if layout else None

    def to_dict(self) -> dict[str, str]:
        return {"ip_address": self.ip_address, "raw_response": self.raw_response}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MixerInfo":
        return cls(str(data["ip_address"]), str(data.get("raw_response", "")))


class DeviceInfo:
    """Identity of the connected mixer, fixed at connect time."""

    def __init__(self):
        self.mixer_type: str = DEFAULT_MIXER_TYPE
        self.name: Optional[str] = None
        self.firmware_version: Optional[str] = None
        self.channel_count: int = 0
        self.bus_count: int = 0
        self.ip_address: Optional[str] = None


class ChannelSend:
    """A channel's contribution to one mix bus."""

    def __init__(self, bus_index: int):
        self._bus_index = bus_index
        self._level: float = 0.0
        self._mute: bool = False
        self._level_received: bool = False
        self._mute_received: bool = False

    @property
    def bus_index(self) -> int:
        return self._bus_index

    @property
    def level(self) -> float:
        return self._level

    @property
    def mute(self) -> bool:
        return self._mute

    @property
    def level_received(self) -> bool:
        """Whether the mixer has reported a send level for this bus."""
        return self._level_received

    @property
    def mute_received(self) -> bool:
        """Whether the mixer has reported a send on/off for this bus."""
        return self._mute_received


class Strip:
    """Shared fader/mute state for channels, busses, FX returns and the main bus."""

    def __init__(self, index: int, name: str = ""):
        self._index = index
        self._name = name
        self._fader: float = 0.0
        self._mute: bool = False

    @property
    def index(self) -> int:
        return self._index

    @property
    def name(self) -> str:
        return self._name

    @property
    def fader(self) -> float:
        return self._fader

    @property
    def mute(self) -> bool:
        return self._mute


class Channel(Strip):
    def __init__(self, index: int, name: str = ""):
        super().__init__(index, name or f"CH{index:02d}")
        self._gain: float = 0.0
        self._color: MixerColor = MixerColor.default()
        self._sends: dict[int, ChannelSend] = {}

    @property
    def gain(self) -> float:
        return self._gain

    @property
    def color(self) -> MixerColor:
        return self._color

    @property
    def sends(self) -> dict[int, ChannelSend]:
        """Sends by bus index. A missing bus means it was never reported."""
        return dict(self._sends)

    def get_send(self, bus_index: int) -> Optional[ChannelSend]:
        return self._sends.get(bus_index)

    def _get_or_create_send(self, bus_index: int) -> ChannelSend:
        send = self._sends.get(bus_index)
        if send is None:
            send = ChannelSend(bus_index)
            self._sends[bus_index] = send
        return send


class Bus(Strip):
    def __init__(self, index: int, name: str = ""):
        super().__init__(index, name or f"BUS{index:02d}")
        self._color: MixerColor = MixerColor.default()
        self.meters: tuple[float, ...] = ()

    @property
    def color(self) -> MixerColor:
        return self._color


class FxReturn(Strip):
    def __init__(self, index: int, name: str = ""):
        super().__init__(index, name or f"FX{index}")


class MainBus(Strip):
    def __init__(self):
        super().__init__(0, "LR")
        self.meters: tuple[float, ...] = ()


class MixerModel:
    """Root aggregate of everything known about the connected mixer."""

    def __init__(self):
        self.info = DeviceInfo()
        self._channels: list[Channel] = []
        self._busses: list[Bus] = []
        self.fx1 = FxReturn(1)
        self.fx2 = FxReturn(2)
        self.main = MainBus()
        self.is_connected: bool = False
        self.ip_address: Optional[str] = None

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels)

    @property
    def busses(self) -> list[Bus]:
        return list(self._busses)

    def configure(self, mixer_type: Optional[str], name: Optional[str] = None,
                  firmware_version: Optional[str] = None):
        """Size the model for a mixer type. Unknown types are treated as an XR16."""
        key = (mixer_type or DEFAULT_MIXER_TYPE).lower()
        if key not in MIXER_LAYOUTS:
            key = DEFAULT_MIXER_TYPE
        channel_count, bus_count = MIXER_LAYOUTS[key]

        self.info.mixer_type = key
        self.info.name = name
        self.info.firmware_version = firmware_version
        self.info.channel_count = channel_count
        self.info.bus_count = bus_count

        self._channels = [Channel(i) for i in range(1, channel_count + 1)]
        self._busses = [Bus(i) for i in range(1, bus_count + 1)]
        self.fx1 = FxReturn(1)
        self.fx2 = FxReturn(2)
        self.main = MainBus()

    def get_channel(self, index: int) -> Optional[Channel]:
        if 1 <= index <= len(self._channels):
            return self._channels[index - 1]
        return None

    def get_bus(self, index: int) -> Optional[Bus]:
        if 1 <= index <= len(self._busses):
            return self._busses[index - 1]
        return None

    def get_fx_return(self, index: int) -> Optional[FxReturn]:
        if index == 1:
            return self.fx1
        if index == 2:
            return self.fx2
        return None


@dataclass(frozen=True)
class TrafficEntry:
    """One datagram sent to or received from the mixer."""

    timestamp: datetime
    is_tx: bool
    address: str
    arguments: tuple = field(default_factory=tuple)
    handled: bool = True
    rx_time: Optional[datetime] = None
    parse_start: Optional[datetime] = None
    parse_end: Optional[datetime] = None

    @property
    def parse_latency(self) -> Optional[float]:
        """Seconds spent applying the message to the model."""
        if self.parse_start is None or self.parse_end is None:
            return None
        return (self.parse_end - self.parse_start).total_seconds()

    @property
    def total_latency(self) -> Optional[float]:
        """Seconds from receiving the datagram until it was logged."""
        if self.rx_time is None:
            return None
        return (self.timestamp - self.rx_time).total_seconds()
