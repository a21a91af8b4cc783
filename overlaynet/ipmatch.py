"""Choosing the external network interface and addresses the overlay uses."""

import enum
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass, field
from typing import Iterable, Optional, Pattern, Protocol, Union

import psutil

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class IPStack(enum.Enum):
    """Which IP families the overlay runs on."""

    IPV4 = 0
    IPV6 = 1
    DUAL = 2
    NONE = 3


def get_ip_family(auto_detect_ipv4: bool, auto_detect_ipv6: bool) -> IPStack:
    """Map the two auto-detect switches to an IP stack.

    Raises ValueError when neither family is enabled.
    """
    if auto_detect_ipv4 and not auto_detect_ipv6:
        return IPStack.IPV4
    if auto_detect_ipv6 and not auto_detect_ipv4:
        return IPStack.IPV6
    if auto_detect_ipv4 and auto_detect_ipv6:
        return IPStack.DUAL
    raise ValueError("none defined stack")


@dataclass(frozen=True)
class PublicIPOpts:
    """Public addresses given explicitly, as text; empty means not given."""

    public_ip: str = ""
    public_ipv6: str = ""


@dataclass(frozen=True)
class NetInterface:
    """A network interface with its index, MTU and addresses."""

    name: str
    index: int
    mtu: int
    addresses: tuple[IPAddress, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "addresses", tuple(self.addresses))

    @property
    def ipv4_addresses(self) -> list[IPAddress]:
        return [addr for addr in self.addresses if addr.version == 4]

    @property
    def ipv6_addresses(self) -> list[IPAddress]:
        return [addr for addr in self.addresses if addr.version == 6]


@dataclass(frozen=True)
class ExternalInterface:
    """The interface chosen for the overlay and the addresses it uses."""

    iface: NetInterface
    iface_addr: Optional[IPAddress]
    iface_v6_addr: Optional[IPAddress]
    ext_addr: Optional[IPAddress]
    ext_v6_addr: Optional[IPAddress]


class _System(Protocol):
    def interfaces(self) -> list[NetInterface]: ...

    def by_name(self, name: str) -> NetInterface: ...

    def by_ip(self, address: IPAddress) -> NetInterface: ...

    def default_gateway_interface(self, version: int) -> NetInterface: ...

    def interface_by_route_to(self, address: IPAddress) -> tuple[NetInterface, IPAddress]: ...


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _strip_zone(text: str) -> str:
    return text.split("%", 1)[0]


class SystemInterfaces:
    """The network interfaces of this host."""

    def interfaces(self) -> list[NetInterface]:
        """All interfaces, ordered by index."""
        addrs = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
        result = []
        for name, entries in addrs.items():
            addresses = []
            for entry in entries:
                if entry.family not in (socket.AF_INET, socket.AF_INET6):
                    continue
                parsed = _parse_ip(_strip_zone(entry.address))
                if parsed is not None:
                    addresses.append(parsed)
            try:
                index = socket.if_nametoindex(name)
            except OSError:
                index = 0
            stat = stats.get(name)
            mtu = stat.mtu if stat is not None else 0
            result.append(NetInterface(name, index, mtu, tuple(addresses)))
        return sorted(result, key=lambda iface: iface.index)

    def by_name(self, name: str) -> NetInterface:
        """The interface called ``name``; LookupError if there is none."""
        for iface in self.interfaces():
            if iface.name == name:
                return iface
        raise LookupError(f"no such network interface: {name}")

    def by_ip(self, address: IPAddress) -> NetInterface:
        """The interface holding ``address``; LookupError if there is none."""
        for iface in self.interfaces():
            if address in iface.addresses:
                return iface
        raise LookupError(f"no interface with given IP found: {address}")

    def default_gateway_interface(self, version: int) -> NetInterface:
        """The interface of the IPv4 (``version`` 4) or IPv6 (6) default route."""
        if version == 4:
            name = self._default_route_device_v4()
        elif version == 6:
            name = self._default_route_device_v6()
        else:
            raise ValueError(f"unknown IP version: {version}")
        if name is None:
            raise LookupError("unable to find default route")
        return self.by_name(name)

    @staticmethod
    def _default_route_device_v4() -> Optional[str]:
        try:
            with open("/proc/net/route", encoding="ascii") as handle:
                lines = handle.read().splitlines()[1:]
        except OSError as exc:
            raise LookupError(f"unable to read routes: {exc}") from exc
        for line in lines:
            fields = line.split()
            if len(fields) >= 8 and fields[1] == "00000000" and fields[7] == "00000000":
                return fields[0]
        return None

    @staticmethod
    def _default_route_device_v6() -> Optional[str]:
        try:
            with open("/proc/net/ipv6_route", encoding="ascii") as handle:
                lines = handle.read().splitlines()
        except OSError as exc:
            raise LookupError(f"unable to read routes: {exc}") from exc
        for line in lines:
            fields = line.split()
            if len(fields) < 10:
                continue
            if fields[0] == "0" * 32 and fields[1] == "00" and fields[9] != "lo":
                return fields[9]
        return None

    def interface_by_route_to(self, address: IPAddress) -> tuple[NetInterface, IPAddress]:
        """The interface and source address the host would use to reach ``address``."""
        family = socket.AF_INET if address.version == 4 else socket.AF_INET6
        try:
            with socket.socket(family, socket.SOCK_DGRAM) as sock:
                sock.connect((str(address), 9))
                local = sock.getsockname()[0]
        except OSError as exc:
            raise LookupError(f"no route to {address}: {exc}") from exc
        source = _parse_ip(_strip_zone(local))
        if source is None:
            raise LookupError(f"no source address for route to {address}")
        return self.by_ip(source), source


def match_ip(pattern: Pattern[str], addresses: Iterable[IPAddress]) -> Optional[IPAddress]:
    """The first address whose text form ``pattern`` matches, or None."""
    for address in addresses:
        if pattern.search(str(address)):
            return address
    return None


def _by_ip_or_fail(system: _System, address: IPAddress, label: str, shown: str) -> NetInterface:
    try:
        return system.by_ip(address)
    except (LookupError, OSError) as exc:
        raise LookupError(f"error looking up {label} {shown}: {exc}") from exc


def _lookup_by_ifname(
    system: _System, ifname: str, ip_stack: IPStack, opts: PublicIPOpts
) -> tuple[Optional[NetInterface], Optional[IPAddress], Optional[IPAddress]]:
    iface: Optional[NetInterface] = None
    iface_v6_addr: Optional[IPAddress] = None
    iface_addr = _parse_ip(ifname)
    if iface_addr is None:
        try:
            return system.by_name(ifname), None, None
        except (LookupError, OSError) as exc:
            raise LookupError(f"error looking up interface {ifname}: {exc}") from exc

    logger.info("Searching for interface using %s", iface_addr)
    if ip_stack is IPStack.IPV4:
        iface = _by_ip_or_fail(system, iface_addr, "interface", ifname)
    elif ip_stack is IPStack.IPV6:
        iface = _by_ip_or_fail(system, iface_addr, "v6 interface", ifname)
    elif ip_stack is IPStack.DUAL:
        if iface_addr.version == 4:
            iface = _by_ip_or_fail(system, iface_addr, "interface", ifname)
        if opts.public_ipv6:
            iface_v6_addr = _parse_ip(opts.public_ipv6)
            if iface_v6_addr is not None:
                v6_iface = _by_ip_or_fail(system, iface_v6_addr, "v6 interface", opts.public_ipv6)
                if iface_addr.version != 4:
                    iface = v6_iface
                    iface_addr = None
                elif iface is not None and iface.name != v6_iface.name:
                    raise LookupError(
                        f"v6 interface {v6_iface.name} must be the same with v4 interface {iface.name}"
                    )
    return iface, iface_addr, iface_v6_addr


def _lookup_by_regex(
    system: _System, pattern: Pattern[str], ifregex: str, ip_stack: IPStack
) -> tuple[NetInterface, Optional[IPAddress], Optional[IPAddress]]:
    try:
        ifaces = system.interfaces()
    except OSError as exc:
        raise LookupError(f"error listing all interfaces: {exc}") from exc

    iface: Optional[NetInterface] = None
    iface_addr: Optional[IPAddress] = None
    iface_v6_addr: Optional[IPAddress] = None

    for candidate in ifaces:
        if ip_stack is IPStack.IPV4:
            matched = match_ip(pattern, candidate.ipv4_addresses)
            if matched is not None:
                iface_addr, iface = matched, candidate
                break
        elif ip_stack is IPStack.IPV6:
            matched = match_ip(pattern, candidate.ipv6_addresses)
            if matched is not None:
                iface_v6_addr, iface = matched, candidate
                break
        elif ip_stack is IPStack.DUAL:
            matched = match_ip(pattern, candidate.ipv4_addresses)
            if matched is None:
                continue
            iface_addr = matched
            matched_v6 = match_ip(pattern, candidate.ipv6_addresses)
            if matched_v6 is not None:
                iface_v6_addr, iface = matched_v6, candidate
                break

    if iface is None and (iface_addr is None or iface_v6_addr is None):
        iface = next((candidate for candidate in ifaces if pattern.search(candidate.name)), None)

    if iface is None:
        available = []
        for candidate in ifaces:
            shown = candidate.ipv6_addresses if ip_stack is IPStack.IPV6 else candidate.ipv4_addresses
            available.append(f"{candidate.name}:[{' '.join(str(addr) for addr in shown)}]")
        raise LookupError(
            f"Could not match pattern {ifregex} to any of the available network interfaces "
            f"({', '.join(available)})"
        )
    return iface, iface_addr, iface_v6_addr


def _lookup_default(system: _System, ip_stack: IPStack) -> NetInterface:
    logger.info("Determining IP address of default interface")

    def default(version: int) -> NetInterface:
        try:
            return system.default_gateway_interface(version)
        except (LookupError, OSError) as exc:
            label = "default interface" if version == 4 else "default v6 interface"
            raise LookupError(f"failed to get {label}: {exc}") from exc

    if ip_stack is IPStack.IPV6:
        return default(6)
    iface = default(4)
    if ip_stack is IPStack.DUAL:
        v6_iface = default(6)
        if iface.name != v6_iface.name:
            raise LookupError(
                f"v6 default route interface {v6_iface.name} "
                f"must be the same with v4 default route interface {iface.name}"
            )
    return iface


def _first(addresses: list[IPAddress], label: str, iface: NetInterface) -> IPAddress:
    if not addresses:
        raise LookupError(f"failed to find {label} address for interface {iface.name}")
    return addresses[0]


def _public(text: str, label: str) -> Optional[IPAddress]:
    if not text:
        return None
    address = _parse_ip(text)
    if address is None:
        raise ValueError(f"invalid public {label} address: {text}")
    logger.info("Using %s as external address", address)
    return address


def lookup_ext_iface(
    ifname: str,
    ifregex: str,
    ifcanreach: str,
    ip_stack: IPStack,
    opts: Optional[PublicIPOpts] = None,
    system: Optional[_System] = None,
) -> ExternalInterface:
    """Choose the external interface by name or address, by pattern, by reachability or by default route.

    Raises ValueError for bad arguments and LookupError when no suitable interface is found.
    """
    opts = opts if opts is not None else PublicIPOpts()
    system = system if system is not None else SystemInterfaces()

    pattern: Optional[Pattern[str]] = None
    if ifregex:
        try:
            pattern = re.compile(ifregex)
        except re.error as exc:
            raise ValueError(f"could not compile the IP address regex '{ifregex}': {exc}") from exc

    if ip_stack is IPStack.NONE:
        raise ValueError("none matched ip stack")

    iface: Optional[NetInterface]
    iface_addr: Optional[IPAddress] = None
    iface_v6_addr: Optional[IPAddress] = None

    if ifname:
        iface, iface_addr, iface_v6_addr = _lookup_by_ifname(system, ifname, ip_stack, opts)
    elif pattern is not None:
        iface, iface_addr, iface_v6_addr = _lookup_by_regex(system, pattern, ifregex, ip_stack)
    elif ifcanreach:
        logger.info("Determining interface to use based on given ifcanreach: %s", ifcanreach)
        target = _parse_ip(ifcanreach)
        try:
            if target is None:
                raise LookupError(f"invalid address: {ifcanreach}")
            iface, iface_addr = system.interface_by_route_to(target)
        except (LookupError, OSError) as exc:
            raise LookupError(f"failed to get ifcanreach based interface: {exc}") from exc
    else:
        iface = _lookup_default(system, ip_stack)

    if iface is None:
        raise LookupError(f"failed to find interface for {ifname}")

    if ip_stack is IPStack.IPV4 and iface_addr is None:
        iface_addr = _first(iface.ipv4_addresses, "IPv4", iface)
    elif ip_stack is IPStack.IPV6 and iface_v6_addr is None:
        iface_v6_addr = _first(iface.ipv6_addresses, "IPv6", iface)
    elif ip_stack is IPStack.DUAL and iface_addr is None and iface_v6_addr is None:
        iface_addr = _first(iface.ipv4_addresses, "IPv4", iface)
        iface_v6_addr = _first(iface.ipv6_addresses, "IPv6", iface)

    if iface_addr is not None:
        logger.info("Using interface with name %s and address %s", iface.name, iface_addr)
    if iface_v6_addr is not None:
        logger.info("Using interface with name %s and v6 address %s", iface.name, iface_v6_addr)

    if iface.mtu == 0:
        raise LookupError(f"failed to determine MTU for {iface_addr} interface")

    ext_addr = _public(opts.public_ip, "IP")
    if ext_addr is None and ip_stack is not IPStack.IPV6:
        logger.info("Defaulting external address to interface address (%s)", iface_addr)
        ext_addr = iface_addr

    ext_v6_addr = _public(opts.public_ipv6, "IPv6")
    if ext_v6_addr is None and ip_stack is not IPStack.IPV4:
        logger.info("Defaulting external v6 address to interface address (%s)", iface_v6_addr)
        ext_v6_addr = iface_v6_addr

    return ExternalInterface(
        iface=iface,
        iface_addr=iface_addr,
        iface_v6_addr=iface_v6_addr,
        ext_addr=ext_addr,
        ext_v6_addr=ext_v6_addr,
    )