"""pyxair Python Package

Python library for controlling Behringer X-Air digital mixers over OSC.
"""

from pyxair.exceptions import MixerConnectionError, MixerError, MixerNotConnectedError
from pyxair.listener import LoggingListener, MixerEventListener
from pyxair.mixer import XAirMixer
from pyxair.models import ConnectState, MixerColor, MixerInfo

__all__ = [
    "XAirMixer",
    "MixerEventListener",
    "LoggingListener",
    "ConnectState",
    "MixerColor",
    "MixerInfo",
    "MixerError",
    "MixerConnectionError",
    "MixerNotConnectedError",
]
