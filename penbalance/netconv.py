"""Socket address helpers: ports, names and conversions."""

from __future__ import annotations

import ipaddress
import re
import socket
import sys
from dataclasses import dataclass, replace

from penbalance.diag import Diag

AF_INET = socket.AF_INET
AF_INET6 = socket.AF_INET6
AF_UNIX = getattr(socket, "AF_UNIX", 1)

_UNIX_PATHS = sys.platform != "win32"
_SUN_PATH_MAX = 107
_SIZES = {AF_UNIX: 110, AF_INET: 16, AF_INET6: 28}
_STORAGE_SIZE = 128

_diag = Diag()


@dataclass(frozen=True)
class SockAddr:
    """A socket address: an IP address or a Unix socket path, with a port."""

    family: int
    address: str
    port: int = 0


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def get_port(name: str, proto: int) -> int:
    """Resolve a service name or number to a port for the given socket type."""
    protocol = "tcp" if proto == socket.SOCK_STREAM else "udp"
    try:
        return socket.getservbyname(name, protocol)
    except OSError:
        return _atoi(name)


def address_port(addr: SockAddr) -> int:
    """Return the port of ``addr``; Unix sockets have port 1."""
    if addr.family == AF_UNIX:
        return 1
    if addr.family in (AF_INET, AF_INET6):
        return addr.port
    _diag.debug("pen_getport: Unknown address family %d", addr.family)
    return 0


def with_port(addr: SockAddr, port: int) -> SockAddr:
    """Return ``addr`` with its port replaced; Unix sockets are unchanged."""
    if addr.family == AF_UNIX:
        return addr
    if addr.family in (AF_INET, AF_INET6):
        return replace(addr, port=port)
    _diag.debug("pen_setport: Unknown address family %d", addr.family)
    raise ValueError(f"unknown address family {addr.family}")


def format_address(addr: SockAddr) -> str:
    """Return the textual address or socket path of ``addr``."""
    if addr.family in (AF_INET, AF_INET6, AF_UNIX):
        return addr.address
    _diag.debug("pen_ntoa: unknown address family %d", addr.family)
    return f"(unknown address family {addr.family})"


def describe_address(addr: SockAddr) -> list[str]:
    """Describe ``addr`` as debug lines, emit them and return them."""
    if addr.family == AF_INET:
        lines = ["Family: AF_INET", f"Port: {address_port(addr)}",
                 f"Address: {format_address(addr)}"]
    elif addr.family == AF_INET6:
        lines = ["Family: AF_INET6", f"Port: {address_port(addr)}",
                 f"Address: {format_address(addr)}"]
    elif addr.family == AF_UNIX:
        lines = ["Family: AF_UNIX", f"Path: {format_address(addr)}"]
    else:
        lines = [f"pen_dumpaddr: Unknown address family {addr.family}"]
    for line in lines:
        _diag.debug("%s", line)
    return lines


def sockaddr_size(addr: SockAddr) -> int:
    """Return the size of the native socket address structure for ``addr``."""
    try:
        return _SIZES[addr.family]
    except KeyError:
        _diag.debug("pen_ss_size: unknown address family %d", addr.family)
        return _STORAGE_SIZE


def _canonical(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> str:
    if ip.version == 4:
        return str(ip)
    text = socket.inet_ntop(AF_INET6, ip.packed)
    if ip.scope_id:
        text += f"%{ip.scope_id}"
    return text


def parse_address(name: str) -> SockAddr:
    """Turn a socket path, host name or IP address into a :class:`SockAddr`.

    Raises ValueError when the name cannot be resolved.
    """
    if _UNIX_PATHS and "/" in name:
        return SockAddr(AF_UNIX, name[:_SUN_PATH_MAX])
    try:
        ip = ipaddress.ip_address(name)
    except ValueError:
        pass
    else:
        return SockAddr(AF_INET if ip.version == 4 else AF_INET6, _canonical(ip))
    try:
        infos = socket.getaddrinfo(name, None, 0, socket.SOCK_STREAM, 0,
                                   socket.AI_ADDRCONFIG)
    except socket.gaierror as exc:
        _diag.debug("getaddrinfo: %s", exc.strerror)
        raise ValueError(f"cannot resolve {name!r}: {exc.strerror}") from exc
    if not infos:
        raise ValueError(f"cannot resolve {name!r}")
    family, _, _, _, sockaddr = infos[0]
    if family in (AF_INET, AF_INET6):
        return SockAddr(family, sockaddr[0])
    _diag.debug("Unknown family %d", family)
    raise ValueError(f"unknown address family {family} for {name!r}")