import asyncio
import time

import pytest

from pyxair.discovery import MixerScanner, is_mixer_response, parse_mixer_info, response_text
from pyxair.network import MulticastLock
from pyxair.protocol import decode_packet, encode_message

XR18_REPLY = b"X-Air XR18 1.15 18 6"


class _ScriptedTransport:

    def __init__(self, responses: asyncio.Queue, replies):
        self._responses = responses
        self._replies = replies
        self.sent = []
        self.closed = False

    def sendto(self, data, addr):
        self.sent.append((data, addr))
        for reply in self._replies:
            self._responses.put_nowait(reply)

    def close(self):
        self.closed = True


class _ScriptedScanner(MixerScanner):
    """Scanner whose broadcast is answered by a fixed list of (payload, addr) replies."""

    def __init__(self, replies=(), fail=False, **kwargs):
        super().__init__(**kwargs)
        self._replies = replies
        self._fail = fail
        self.transport = None

    async def _open_endpoint(self, responses):
        if self._fail:
            raise OSError("Network is unreachable")
        self.transport = _ScriptedTransport(responses, self._replies)
        return self.transport


class _RecordingLock(MulticastLock):

    def __init__(self):
        self.calls = []

    def acquire(self):
        self.calls.append("acquire")

    def release(self):
        self.calls.append("release")


class TestIdentification:

    def test_plain_text_reply(self):
        info = parse_mixer_info("192.168.1.50", XR18_REPLY)

        assert info.ip_address == "192.168.1.50"
        assert info.mixer_type == "XR18"
        assert info.firmware == "1.15"
        assert info.channel_count == 18
        assert info.bus_count == 6

    def test_osc_reply(self):
        payload = encode_message("/xinfo", ["192.168.1.50", "XR18-0A-0B-0C", "XR18", "1.15"])

        info = parse_mixer_info("192.168.1.50", payload)

        assert response_text(payload) == "/xinfo\x00192.168.1.50\x00XR18-0A-0B-0C\x00XR18\x001.15"
        assert info.name == "XR18-0A-0B-0C"
        assert info.mixer_type == "XR18"
        assert info.firmware == "1.15"

    def test_osc_reply_name_with_spaces(self):
        payload = encode_message("/xinfo", ["192.168.1.50", "Band Mixer", "XR18", "1.15"])

        info = parse_mixer_info("192.168.1.50", payload)

        assert info.name == "Band Mixer"
        assert info.mixer_type == "XR18"
        assert info.firmware == "1.15"
        assert info.channel_count == 18

    @pytest.mark.parametrize("payload,expected", [
        (XR18_REPLY, True),
        (b"/XINFO XR12", True),
        (encode_message("/xinfo", ["10.0.0.2", "XR16", "XR16", "1.10"]), True),
        (b"hello", False),
        (encode_message("/status", ["active"]), False),
        (b"", False),
    ])
    def test_marker(self, payload, expected):
        assert is_mixer_response(payload) is expected


class TestMixerScanner:

    @pytest.mark.asyncio
    async def test_broadcasts_xinfo(self):
        scanner = _ScriptedScanner()

        await scanner.scan(timeout_ms=20)

        data, addr = scanner.transport.sent[0]
        assert addr == ("255.255.255.255", 10024)
        assert decode_packet(data) == [("/xinfo", ())]
        assert scanner.transport.closed is True

    @pytest.mark.asyncio
    async def test_deduplicates_by_ip(self):
        scanner = _ScriptedScanner([
            (XR18_REPLY, ("192.168.1.50", 10024)),
            (XR18_REPLY, ("192.168.1.50", 10024)),
            (b"X-Air XR12 1.17 12 2", ("192.168.1.51", 10024)),
        ])

        mixers = await scanner.scan(timeout_ms=50)

        assert [mixer.ip_address for mixer in mixers] == ["192.168.1.50", "192.168.1.51"]
        assert mixers[1].mixer_type == "XR12"

    @pytest.mark.asyncio
    async def test_ignores_non_mixers(self):
        scanner = _ScriptedScanner([
            (b"some other device", ("192.168.1.60", 10024)),
            (XR18_REPLY, ("192.168.1.50", 10024)),
        ])

        mixers = await scanner.scan(timeout_ms=50)

        assert [mixer.ip_address for mixer in mixers] == ["192.168.1.50"]

    @pytest.mark.asyncio
    async def test_silence_returns_empty_within_timeout(self):
        scanner = _ScriptedScanner()

        started = time.monotonic()
        mixers = await scanner.scan(timeout_ms=100)

        assert mixers == []
        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_socket_error_returns_empty(self):
        lock = _RecordingLock()
        scanner = _ScriptedScanner(fail=True, multicast_lock=lock)

        assert await scanner.scan(timeout_ms=50) == []
        assert lock.calls == ["acquire", "release"]

    @pytest.mark.asyncio
    async def test_multicast_lock_brackets_scan(self):
        lock = _RecordingLock()
        scanner = _ScriptedScanner([(XR18_REPLY, ("192.168.1.50", 10024))], multicast_lock=lock)

        await scanner.scan(timeout_ms=20)

        assert lock.calls == ["acquire", "release"]
