"""Target address parsing"""

from typing import Tuple

LOOPBACK_HOST = "127.0.0.1"


def normalize_server_addr(addr: str) -> str:
    """
    Normalize a `host:port` target; a leading `:port` implies the loopback address

    >>> normalize_server_addr(":8080")
    '127.0.0.1:8080'
    """
    addr = addr.strip()
    if addr.startswith(":"):
        return f"{LOOPBACK_HOST}{addr}"
    return addr


def split_host_port(addr: str) -> Tuple[str, int]:
    """
    Split a normalized `host:port` (IPv6 hosts may be bracketed)

    Raises:
        ValueError: If the address has no valid port
    """
    addr = normalize_server_addr(addr)
    host, sep, port = addr.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Server address must be HOST:PORT, got '{addr}'")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in server address '{addr}'") from None
    if not 0 < port_number < 65536:
        raise ValueError(f"Port out of range in server address '{addr}'")
    return host, port_number
