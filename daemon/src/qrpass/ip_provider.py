"""IP address discovery providers.

Used to build scan URLs a phone on the same network can open when the
server is reached through a loopback address. Follows dependency
injection pattern.
"""

import ipaddress
import socket
from typing import Protocol

import netifaces


class IpProvider(Protocol):
    """Protocol for IP address discovery.

    Implementations provide different strategies:
    - LocalNetworkIpProvider: Discovers LAN IP (192.168.x.x)
    - StaticIpProvider: Uses a configured static IP
    """

    async def get_ip(self) -> str:
        """Get the IP address to put in scan URLs.

        Returns:
            Routable IP address (not 0.0.0.0 or similar).

        Raises:
            IpDiscoveryError: If IP cannot be determined.
        """
        ...


class IpDiscoveryError(Exception):
    """Failed to discover IP address."""
    pass


class LocalNetworkIpProvider:
    """Discovers local LAN IP address.

    Prefers physical LAN IPs (192.168.x.x, etc.) over VPN tunnel IPs,
    since the phone scanning the code is on the local Wi-Fi.

    Example:
        provider = LocalNetworkIpProvider()
        ip = await provider.get_ip()  # "192.168.1.100"
    """

    # Interface name prefixes that indicate physical network (not VPN/tunnel)
    PHYSICAL_PREFIXES = ("en", "eth", "wlan", "wl", "bridge")
    # VPN/tunnel interface prefixes to avoid
    VPN_PREFIXES = ("utun", "tun", "tap", "wg", "tailscale")

    async def get_ip(self) -> str:
        """Get local network IP address, preferring physical interfaces.

        Returns:
            Local IP address (e.g., '192.168.1.100').

        Raises:
            IpDiscoveryError: If local IP cannot be determined.
        """
        physical_ip = self._get_physical_interface_ip()
        if physical_ip:
            return physical_ip

        # Fall back to socket trick (may return VPN IP)
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect(("8.8.8.8", 80))
                ip = s.getsockname()[0]
        except OSError as e:
            raise IpDiscoveryError(f"Network error discovering local IP: {e}")

        if ip == "0.0.0.0":
            raise IpDiscoveryError("Could not determine local IP (got 0.0.0.0)")
        if ip.startswith("127."):
            raise IpDiscoveryError(f"Got loopback address {ip}, not LAN IP")

        return ip

    def _get_physical_interface_ip(self) -> str | None:
        """Get IP from a physical network interface (not VPN/tunnel).

        Returns:
            IP address or None if no physical interface found.
        """
        try:
            interfaces = netifaces.interfaces()
        except OSError:
            return None

        for iface in interfaces:
            if iface.startswith("lo"):
                continue
            if any(iface.startswith(prefix) for prefix in self.VPN_PREFIXES):
                continue
            if not any(iface.startswith(prefix) for prefix in self.PHYSICAL_PREFIXES):
                continue

            addrs = netifaces.ifaddresses(iface)
            for addr in addrs.get(netifaces.AF_INET, []):
                ip = addr.get("addr")
                if ip and not ip.startswith("127."):
                    return ip
        return None


class StaticIpProvider:
    """Uses a statically configured IP address.

    Example:
        provider = StaticIpProvider("192.168.1.100")
        ip = await provider.get_ip()  # "192.168.1.100"
    """

    # IPs that are never valid in a scan URL
    INVALID_IPS = {"0.0.0.0", "255.255.255.255"}

    def __init__(self, ip: str):
        """Initialize with static IP.

        Args:
            ip: The IP address to use.

        Raises:
            ValueError: If IP is not routable.
        """
        if ip in self.INVALID_IPS:
            raise ValueError(f"IP '{ip}' is not routable")
        try:
            ipaddress.IPv4Address(ip)
        except ipaddress.AddressValueError:
            raise ValueError(f"Invalid IP format: {ip}")
        self._ip = ip

    async def get_ip(self) -> str:
        return self._ip
