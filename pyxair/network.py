"""Host network collaborators: local address lookup, subnet check, multicast lock."""

import ipaddress
import logging
import socket
from abc import ABC, abstractmethod
from typing import Optional

import psutil


def _octets(address: Optional[str]) -> Optional[tuple[int, ...]]:
    if not address:
        return None
    try:
        return tuple(ipaddress.IPv4Address(address.strip()).packed)
    except ValueError:
        return None


def same_subnet(device_address: Optional[str], local_address: Optional[str]) -> bool:
    """Whether both IPv4 addresses share their first three octets.

    X-Air mixers are nearly always on a /24 behind a Wi-Fi router, so this is
    the check used to detect a controller roamed onto the wrong network.
    Anything unparsable, including a missing local address, is a mismatch.
    """
    device = _octets(device_address)
    local = _octets(local_address)
    if device is None or local is None:
        return False
    return device[:3] == local[:3]


class NetworkInfo(ABC):

    @abstractmethod
    def local_ipv4(self, target: Optional[str] = None) -> Optional[str]:
        """The host's active IPv4 address, or None when there is none.

        target is the mixer about to be contacted; implementations may use it
        to pick the interface traffic to that host would leave through.
        """
        pass


class StaticNetworkInfo(NetworkInfo):

    def __init__(self, address: Optional[str]):
        self._address = address

    def local_ipv4(self, target: Optional[str] = None) -> Optional[str]:
        return self._address


# Container, VPN and hypervisor bridges are up but never face the mixer's LAN
VIRTUAL_INTERFACE_PREFIXES = ("docker", "br-", "veth", "virbr", "vmnet", "vboxnet", "tun", "tap", "utun", "wg", "zt")

# TEST-NET-1, only used to ask the kernel for the default route source
_DEFAULT_ROUTE_TARGET = "192.0.2.1"
_ROUTE_LOOKUP_PORT = 10024


class PsutilNetworkInfo(NetworkInfo):
    """Picks the IPv4 address traffic to the mixer leaves from.

    The kernel's route source for the target (or the default route) wins when
    it belongs to an interface that is up. Otherwise physical interfaces are
    preferred over virtual bridges. Loopback and link-local are never used.
    """

    def __init__(self):
        self._logger = logging.getLogger(__name__)

    def local_ipv4(self, target: Optional[str] = None) -> Optional[str]:
        try:
            addresses = psutil.net_if_addrs()
            stats = psutil.net_if_stats()
        except OSError as e:
            self._logger.warning(f"Could not read network interfaces: {e}")
            return None

        candidates = []
        for name, address_list in addresses.items():
            interface_stats = stats.get(name)
            if interface_stats is not None and not interface_stats.isup:
                continue
            for info in address_list:
                if info.family != socket.AF_INET:
                    continue
                try:
                    address = ipaddress.IPv4Address(info.address)
                except ValueError:
                    continue
                if address.is_loopback or address.is_link_local:
                    continue
                candidates.append((name, str(address)))
        if not candidates:
            return None

        route_source = self._route_source(target)
        for name, address in candidates:
            if address == route_source:
                self._logger.debug(f"Active IPv4 interface {name}: {address} (route source)")
                return address

        # sorted() is stable, so physical interfaces keep their enumeration order
        name, address = sorted(candidates, key=lambda candidate: _is_virtual(candidate[0]))[0]
        self._logger.debug(f"Active IPv4 interface {name}: {address}")
        return address

    def _route_source(self, target: Optional[str]) -> Optional[str]:
        """Local address the kernel would send from to reach target. No packet is sent."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.connect((target or _DEFAULT_ROUTE_TARGET, _ROUTE_LOOKUP_PORT))
            return sock.getsockname()[0]
        except OSError as e:
            self._logger.debug(f"No route to {target or 'default gateway'}: {e}")
            return None
        finally:
            sock.close()


def _is_virtual(interface_name: str) -> bool:
    return interface_name.lower().startswith(VIRTUAL_INTERFACE_PREFIXES)


class MulticastLock(ABC):
    """Platform capability needed to receive broadcast replies (e.g. on Android Wi-Fi).

    Held only for the duration of a discovery scan.
    """

    @abstractmethod
    def acquire(self):
        pass

    @abstractmethod
    def release(self):
        pass

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


class NullMulticastLock(MulticastLock):
    """Desktop platforms receive broadcasts without a lock."""

    def acquire(self):
        pass

    def release(self):
        pass
