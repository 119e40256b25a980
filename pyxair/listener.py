from abc import ABC, abstractmethod
import logging
import threading
from typing import List

from pyxair.models import ConnectState, MixerColor, TrafficEntry


class MixerEventListener(ABC):

    @abstractmethod
    def connect_state_changed(self, state: ConnectState):
        pass

    @abstractmethod
    def state_changed(self, key: str):
        """Called when a model field changed. Key is the raw OSC address."""
        pass

    @abstractmethod
    def bus_updated(self, bus_index: int, name: str, color: MixerColor):
        pass

    def connected(self):
        pass

    def disconnected(self):
        pass

    def traffic_appended(self, entry: TrafficEntry):
        # By default, do nothing but can be overwritten to be notified of these messages.
        pass

    def error(self, error_message: str):
        # By default, do nothing but can be overwritten to be notified of these messages.
        pass


class MultiplexingListener(MixerEventListener):
    """Fans every event out to the registered listeners.

    Registration is safe from any thread. A listener that raises is logged
    and skipped so the others (and the receive path) keep running.
    """

    _listeners: List[MixerEventListener]

    def __init__(self):
        self._listeners = []
        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    def _snapshot(self) -> List[MixerEventListener]:
        with self._lock:
            return list(self._listeners)

    def _notify(self, method_name: str, *args):
        for listener in self._snapshot():
            try:
                getattr(listener, method_name)(*args)
            except Exception as e:
                self._logger.error(f"Exception in {method_name}() listener {listener!r}: {e}", exc_info=True)

    def connect_state_changed(self, state: ConnectState):
        self._notify("connect_state_changed", state)

    def state_changed(self, key: str):
        self._notify("state_changed", key)

    def bus_updated(self, bus_index: int, name: str, color: MixerColor):
        self._notify("bus_updated", bus_index, name, color)

    def connected(self):
        self._notify("connected")

    def disconnected(self):
        self._notify("disconnected")

    def traffic_appended(self, entry: TrafficEntry):
        self._notify("traffic_appended", entry)

    def error(self, error_message: str):
        self._notify("error", error_message)

    def register_listener(self, listener: MixerEventListener):
        with self._lock:
            self._listeners.append(listener)

    def unregister_listener(self, listener: MixerEventListener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
                return
        self._logger.info("Listener isn't registered")


class LoggingListener(MixerEventListener):

    def __init__(self, logger=logging):
        self.logger = logger

    def connected(self):
        self.logger.info("Connected")

    def disconnected(self):
        self.logger.info("Disconnected")

    def connect_state_changed(self, state: ConnectState):
        self.logger.info(f"Connection state: {state.name}")

    def state_changed(self, key: str):
        self.logger.debug(f"Changed: {key}")

    def bus_updated(self, bus_index: int, name: str, color: MixerColor):
        self.logger.info(f"Bus {bus_index} name: {name} color: {color.name}")

    def traffic_appended(self, entry: TrafficEntry):
        direction = "TX" if entry.is_tx else "RX"
        self.logger.debug(f"{direction} {entry.address} {list(entry.arguments)}")

    def error(self, error_message: str):
        self.logger.error(error_message)
