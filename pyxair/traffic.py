import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Optional

from pyxair.listener import MixerEventListener
from pyxair.models import TrafficEntry

DEFAULT_MAX_ENTRIES = 1000


class MixerTrafficLog:
    """Bounded record of sent and received OSC messages for diagnostics.

    Appends are O(1) and never raise, so logging from the receive path cannot
    stall it. Each entry is also published as traffic_appended().
    """

    def __init__(self, callback: Optional[MixerEventListener] = None, max_entries: int = DEFAULT_MAX_ENTRIES):
        self._logger = logging.getLogger(__name__)
        self._callback = callback
        self._lock = threading.Lock()
        self._entries: deque[TrafficEntry] = deque(maxlen=max_entries)

    def add_tx(self, address: str, args, timestamp: Optional[datetime] = None) -> TrafficEntry:
        entry = TrafficEntry(
            timestamp=timestamp or datetime.now(timezone.utc),
            is_tx=True,
            address=address,
            arguments=tuple(args),
            handled=True,
        )
        self._add(entry)
        return entry

    def add_rx(
        self,
        address: str,
        args,
        handled: bool,
        rx_time: datetime,
        parse_start: datetime,
        parse_end: datetime,
    ) -> TrafficEntry:
        entry = TrafficEntry(
            timestamp=datetime.now(timezone.utc),
            is_tx=False,
            address=address,
            arguments=tuple(args),
            handled=handled,
            rx_time=rx_time,
            parse_start=parse_start,
            parse_end=parse_end,
        )
        self._add(entry)
        return entry

    def _add(self, entry: TrafficEntry):
        with self._lock:
            self._entries.append(entry)
        if self._callback is not None:
            try:
                self._callback.traffic_appended(entry)
            except Exception as e:
                self._logger.error(f"Exception in traffic_appended() callback: {e}")

    @property
    def entries(self) -> list[TrafficEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
