"""Host networking helpers for overlay networks: iptables rules, routes, interface discovery, MACs."""

__version__ = "0.1.0"
__all__ = ["ipmatch", "iptables", "mac", "powershell", "restore", "retry", "routing"]