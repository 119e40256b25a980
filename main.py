"""
Main command-line interface for pyxair.

This script provides a CLI to find and control Behringer X-Air mixers.
"""

import argparse
import asyncio
import logging
from typing import Optional

from pyxair.mixer import XAirMixer
from pyxair.network import StaticNetworkInfo
from pyxair.storage import JsonFileStore


async def scan(timeout_ms: int):
    """Broadcast for mixers and list the ones that answered."""
    mixer = XAirMixer(store=JsonFileStore())
    print(f"Scanning for mixers ({timeout_ms}ms)...")
    mixers = await mixer.scan(timeout_ms)
    if not mixers:
        print("No mixers found")
        return

    for info in mixers:
        print(f"{info.ip_address:16s} {info.name or '?':24s} {info.mixer_type or '?':6s} fw {info.firmware or '?'}")


async def _connect(host: Optional[str], local_port: int) -> Optional[XAirMixer]:
    if host:
        # An explicit host is trusted even when it is on another subnet
        mixer = XAirMixer(store=JsonFileStore(), network=StaticNetworkInfo(host),
                          local_port=local_port, auto_reconnect=False)
        print(f"Connecting to X-Air at {host}...")
        connected = await mixer.connect_manual(host)
    else:
        mixer = XAirMixer(store=JsonFileStore(), local_port=local_port, auto_reconnect=False)
        print("Connecting to the last used mixer...")
        connected = await mixer.restore()

    if not connected:
        print(f"Could not connect ({mixer.state.name}). Run 'scan' or pass --host.")
        mixer.close()
        return None
    return mixer


async def show_status(host: Optional[str], local_port: int):
    """Connect and display faders and mutes of every strip."""
    mixer = await _connect(host, local_port)
    if mixer is None:
        return

    # Wait for the initial refresh replies to come in
    print("Querying channels, busses and returns...")
    await asyncio.sleep(2)

    info = mixer.model.info
    print(f"\n{info.name or 'X-Air'} ({info.mixer_type}, firmware {info.firmware_version or '?'}) at {info.ip_address}")
    print("-" * 60)
    for channel in mixer.model.channels:
        state = "MUTE" if channel.mute else "on"
        print(f"{channel.name:16s} fader {channel.fader:5.2f}  {state:4s}  color {channel.color.name}")
    print("-" * 60)
    for bus in mixer.model.busses:
        state = "MUTE" if bus.mute else "on"
        print(f"{bus.name:16s} fader {bus.fader:5.2f}  {state:4s}  color {bus.color.name}")
    print("-" * 60)
    for strip in (mixer.model.fx1, mixer.model.fx2, mixer.model.main):
        state = "MUTE" if strip.mute else "on"
        print(f"{strip.name:16s} fader {strip.fader:5.2f}  {state:4s}")
    print("-" * 60)

    mixer.close()


def _strip(mixer: XAirMixer, channel: Optional[int], bus: Optional[int]):
    if channel is None:
        return mixer.bus(bus) if bus is not None else mixer.main()
    if bus is None:
        return mixer.channel(channel)
    return mixer.mix(bus).channel(channel)


async def fader(host: Optional[str], local_port: int, channel: Optional[int], bus: Optional[int],
                value: Optional[float]):
    """Read or set a fader (or send level when both channel and bus are given)."""
    mixer = await _connect(host, local_port)
    if mixer is None:
        return
    strip = _strip(mixer, channel, bus)

    if value is None:
        level = await strip.get_fader_async()
        print(f"{strip.fader_address}: {level:.3f}")
    else:
        print(f"Setting {strip.fader_address} to {value:.3f}...")
        strip.set_fader(value)
        # Give the datagram time to leave before closing the socket
        await asyncio.sleep(0.2)

    mixer.close()
    print("Done")


async def mute(host: Optional[str], local_port: int, channel: Optional[int], bus: Optional[int],
               state: Optional[str]):
    """Read or set a mute."""
    mixer = await _connect(host, local_port)
    if mixer is None:
        return
    strip = _strip(mixer, channel, bus)

    if state is None:
        muted = await strip.get_mute_async()
        print(f"{strip.mute_address}: {'muted' if muted else 'on'}")
    else:
        muted = state == "on"
        print(f"{'Muting' if muted else 'Unmuting'} {strip.mute_address}...")
        strip.set_mute(muted)
        await asyncio.sleep(0.2)

    mixer.close()
    print("Done")


def main():
    parser = argparse.ArgumentParser(description="Control Behringer X-Air mixers")
    parser.add_argument("--host", default=None, help="Mixer IP address (default: last used mixer)")
    parser.add_argument("--local-port", type=int, default=10025,
                        help="Local UDP port, 0 for any free port (default: 10025)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="Find mixers on the local network")
    scan_parser.add_argument("--timeout", type=int, default=2000, help="Scan time in ms (default: 2000)")

    # Status command
    subparsers.add_parser("status", help="Show faders and mutes of all strips")

    # Fader command
    fader_parser = subparsers.add_parser("fader", help="Read or set a fader")
    fader_parser.add_argument("--channel", type=int, help="Channel (1-18), omit for the bus or main fader")
    fader_parser.add_argument("--bus", type=int, help="Mix bus (1-6), omit for the main mix")
    fader_parser.add_argument("value", type=float, nargs="?", help="Fader level 0.0-1.0, omit to read")

    # Mute command
    mute_parser = subparsers.add_parser("mute", help="Read or set a mute")
    mute_parser.add_argument("--channel", type=int, help="Channel (1-18), omit for the bus or main mute")
    mute_parser.add_argument("--bus", type=int, help="Mix bus (1-6), omit for the main mix")
    mute_parser.add_argument("state", choices=["on", "off"], nargs="?", help="'on' mutes, 'off' unmutes, omit to read")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)

    if args.command == "scan":
        asyncio.run(scan(args.timeout))
    elif args.command == "status":
        asyncio.run(show_status(args.host, args.local_port))
    elif args.command == "fader":
        asyncio.run(fader(args.host, args.local_port, args.channel, args.bus, args.value))
    elif args.command == "mute":
        asyncio.run(mute(args.host, args.local_port, args.channel, args.bus, args.state))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
