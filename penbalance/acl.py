"""Access control lists matching client addresses."""

from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass
from typing import Callable, Optional, TextIO, Union

from penbalance.diag import Diag
from penbalance.netconv import AF_INET, AF_INET6, AF_UNIX, SockAddr

ACLS_MAX = 10

CountryLookup = Callable[[SockAddr], Optional[str]]

_UNSET = object()


@dataclass(frozen=True)
class Ipv4Entry:
    """Match IPv4 clients whose address masked with ``mask`` equals ``ip``."""

    permit: bool
    ip: int
    mask: int


@dataclass(frozen=True)
class Ipv6Entry:
    """Match IPv6 clients whose first ``length`` bits equal ``ip``."""

    permit: bool
    ip: bytes
    length: int


@dataclass(frozen=True)
class GeoEntry:
    """Match clients located in a two-letter country."""

    permit: bool
    country: str


Entry = Union[Ipv4Entry, Ipv6Entry, GeoEntry]


def ipv6_mask(length: int) -> bytes:
    """Return the 16-byte netmask with the top ``length`` bits set."""
    if not 0 <= length <= 128:
        raise ValueError(f"IPv6 prefix length {length} outside 0..128")
    bits = ((1 << length) - 1) << (128 - length)
    return bits.to_bytes(16, "big")


class AclTable:
    """A fixed set of numbered access control lists.

    ``country_lookup`` maps a client address to a country code; without it,
    country entries never match.
    """

    def __init__(self, country_lookup: CountryLookup | None = None,
                 diag: Diag | None = None) -> None:
        self._acls: list[list[Entry]] = [[] for _ in range(ACLS_MAX)]
        self.country_lookup = country_lookup
        self._diag = diag if diag is not None else Diag()

    def _entries(self, a: int) -> list[Entry]:
        if not 0 <= a < ACLS_MAX:
            raise IndexError(f"acl {a} outside (0,{ACLS_MAX})")
        return self._acls[a]

    def _trace(self, msg: str, *args) -> None:
        if self._diag.enabled(2):
            self._diag.debug(msg, *args)

    def add_ipv4(self, a: int, ip, mask, permit: bool) -> None:
        """Append an IPv4 address/mask entry to acl ``a``."""
        entries = self._entries(a)
        entry = Ipv4Entry(bool(permit), int(ipaddress.IPv4Address(ip)),
                          int(ipaddress.IPv4Address(mask)))
        self._trace("add_acl_ipv4(%d, %x, %x, %d)", a, entry.ip, entry.mask, entry.permit)
        entries.append(entry)

    def add_ipv6(self, a: int, ip, length: int, permit: bool) -> None:
        """Append an IPv6 prefix entry to acl ``a``."""
        entries = self._entries(a)
        ipv6_mask(length)
        packed = ipaddress.IPv6Address(ip).packed
        self._trace("add_acl_ipv6(%d, %s/%d, %d)", a,
                    socket.inet_ntop(AF_INET6, packed), length, bool(permit))
        entries.append(Ipv6Entry(bool(permit), packed, length))

    def add_geo(self, a: int, country: str, permit: bool) -> None:
        """Append a country entry to acl ``a``."""
        entries = self._entries(a)
        self._trace("add_acl_geo(%d, %s, %d)", a, country, bool(permit))
        entries.append(GeoEntry(bool(permit), country[:2]))

    def delete(self, a: int) -> None:
        """Remove every entry from acl ``a``."""
        self._trace("del_acl(%d)", a)
        self._entries(a).clear()

    def match(self, a: int, addr: SockAddr) -> bool:
        """Return True if acl ``a`` permits the client at ``addr``.

        The first matching entry decides; if none matches, the answer is the
        opposite of the last entry's. Out-of-range acls never match.
        """
        if not 0 <= a < ACLS_MAX:
            return False
        entries = self._acls[a]
        if addr.family == AF_UNIX:
            self._trace("Unix acl:s not implemented")
            return True
        if addr.family == AF_INET:
            client4 = int(ipaddress.IPv4Address(addr.address))
            return self._scan(entries, addr, Ipv4Entry,
                              lambda e: (client4 & e.mask) == e.ip)
        if addr.family == AF_INET6:
            client6 = ipaddress.IPv6Address(addr.address.split("%")[0]).packed
            return self._scan(entries, addr, Ipv6Entry,
                              lambda e: all((c & m) == i for c, m, i in
                                            zip(client6, ipv6_mask(e.length), e.ip)))
        self._diag.debug("match_acl: unknown address family %d", addr.family)
        return False

    def _scan(self, entries, addr, family_entry, hit) -> bool:
        permit = False
        country = _UNSET
        for entry in entries:
            permit = entry.permit
            if isinstance(entry, family_entry):
                if hit(entry):
                    return permit
            elif isinstance(entry, GeoEntry):
                if self.country_lookup is None:
                    self._diag.debug("ACE_GEO: Not implemented")
                    continue
                if country is _UNSET:
                    country = self.country_lookup(addr)
                    self._trace("Country = %s", country or "unknown")
                if country and country[:2] == entry.country:
                    return permit
        return not permit

    def save(self, fp: TextIO) -> None:
        """Write all acls to ``fp`` as configuration commands."""
        for i, entries in enumerate(self._acls):
            fp.write(f"no acl {i}\n")
            for entry in entries:
                fp.write(f"acl {i} {'permit' if entry.permit else 'deny'} ")
                if isinstance(entry, Ipv4Entry):
                    fp.write(f"{ipaddress.IPv4Address(entry.ip)} "
                             f"{ipaddress.IPv4Address(entry.mask)}\n")
                elif isinstance(entry, Ipv6Entry):
                    fp.write(f"{socket.inet_ntop(AF_INET6, entry.ip)}/{entry.length}\n")
                else:
                    fp.write(f"country {entry.country}\n")