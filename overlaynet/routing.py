"""Network routes and a router that manages them through PowerShell."""

import abc
import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Union

from overlaynet import powershell

logger = logging.getLogger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class Route:
    """A route from an interface to a destination subnet through a gateway."""

    interface_index: int
    destination_subnet: IPNetwork
    gateway_address: IPAddress

    def equal(self, other: "Route") -> bool:
        """Compare destination subnet and gateway, ignoring the interface index."""
        return (
            self.destination_subnet == other.destination_subnet
            and self.gateway_address == other.gateway_address
        )


class Router(abc.ABC):
    """Manages network routes."""

    @abc.abstractmethod
    def get_all_routes(self) -> list[Route]:
        """Return all existing routes."""

    @abc.abstractmethod
    def get_routes_from_interface_to_subnet(
        self, interface_index: int, destination_subnet: IPNetwork
    ) -> list[Route]:
        """Return all routes from the given interface to the given subnet."""

    @abc.abstractmethod
    def create_route(
        self, interface_index: int, destination_subnet: IPNetwork, gateway_address: IPAddress
    ) -> None:
        """Create a new route."""

    @abc.abstractmethod
    def delete_route(
        self, interface_index: int, destination_subnet: IPNetwork, gateway_address: IPAddress
    ) -> None:
        """Remove an existing route."""


_SELECT = "Select-Object -Property IfIndex,DestinationPrefix,NextHop"


class WindowsRouter(Router):
    """Router backed by the Windows NetRoute PowerShell cmdlets."""

    def get_all_routes(self) -> list[Route]:
        return _query(f"@(Get-NetRoute | {_SELECT})")

    def get_routes_from_interface_to_subnet(
        self, interface_index: int, destination_subnet: IPNetwork
    ) -> list[Route]:
        return _query(
            f"@(Get-NetRoute -InterfaceIndex {interface_index} "
            f"-DestinationPrefix {destination_subnet} | {_SELECT})"
        )

    def create_route(
        self, interface_index: int, destination_subnet: IPNetwork, gateway_address: IPAddress
    ) -> None:
        powershell.run_command_f(
            "New-NetRoute -InterfaceIndex %d -DestinationPrefix %s -NextHop  %s",
            interface_index,
            str(destination_subnet),
            str(gateway_address),
        )

    def delete_route(
        self, interface_index: int, destination_subnet: IPNetwork, gateway_address: IPAddress
    ) -> None:
        powershell.run_command_f(
            "Remove-NetRoute -InterfaceIndex %d -DestinationPrefix %s -NextHop %s -Verbose -Confirm:$false",
            interface_index,
            str(destination_subnet),
            str(gateway_address),
        )


def _query(command: str) -> list[Route]:
    result = powershell.run_command_with_json_result(command)
    if result is None:
        return []
    if isinstance(result, Mapping):
        result = [result]
    return parse_net_routes(result)


def _parse_cidr(text: Any) -> IPNetwork | None:
    if not isinstance(text, str) or "/" not in text:
        return None
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError:
        return None


def _parse_ip(text: Any) -> IPAddress | None:
    if not isinstance(text, str):
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def parse_net_routes(records: Iterable[Mapping[str, Any]]) -> list[Route]:
    """Turn NetRoute records into routes, skipping those whose prefix or next hop is unusable."""
    routes = []
    for record in records:
        index = record.get("IfIndex", 0)
        if not isinstance(index, int) or isinstance(index, bool):
            logger.debug("skipping route with invalid interface index: %r", index)
            continue
        subnet = _parse_cidr(record.get("DestinationPrefix", ""))
        if subnet is None:
            continue
        gateway = _parse_ip(record.get("NextHop", ""))
        if gateway is None:
            continue
        routes.append(Route(index, subnet, gateway))
    return routes