import logging
from unittest.mock import Mock

from pyxair.listener import LoggingListener, MultiplexingListener
from pyxair.models import ConnectState, MixerColor
from conftest import RecordingListener


class TestMultiplexingListener:

    def test_fans_out(self):
        multiplexer = MultiplexingListener()
        first, second = RecordingListener(), RecordingListener()
        multiplexer.register_listener(first)
        multiplexer.register_listener(second)

        multiplexer.connect_state_changed(ConnectState.CONNECTED)
        multiplexer.bus_updated(2, "Drums", MixerColor.YELLOW)

        for recorder in (first, second):
            assert recorder.states == [ConnectState.CONNECTED]
            assert recorder.bus_updates == [(2, "Drums", MixerColor.YELLOW)]

    def test_failing_listener_is_isolated(self):
        multiplexer = MultiplexingListener()
        failing = Mock()
        failing.state_changed.side_effect = RuntimeError("boom")
        recorder = RecordingListener()
        multiplexer.register_listener(failing)
        multiplexer.register_listener(recorder)

        multiplexer.state_changed("/ch/01/mix/fader")

        assert recorder.changes == ["/ch/01/mix/fader"]

    def test_unregister(self):
        multiplexer = MultiplexingListener()
        recorder = RecordingListener()
        multiplexer.register_listener(recorder)
        multiplexer.unregister_listener(recorder)

        multiplexer.connected()
        multiplexer.unregister_listener(recorder)

        assert recorder.connected_count == 0


class TestLoggingListener:

    def test_logs_events(self, caplog):
        listener = LoggingListener(logging.getLogger("pyxair.test"))

        with caplog.at_level(logging.DEBUG, logger="pyxair.test"):
            listener.connect_state_changed(ConnectState.WIFI_MISMATCH)
            listener.bus_updated(1, "Mon", MixerColor.GREEN)
            listener.error("bind failed")

        assert "WIFI_MISMATCH" in caplog.text
        assert "Bus 1 name: Mon color: GREEN" in caplog.text
        assert "bind failed" in caplog.text
