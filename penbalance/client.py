"""The table of recently seen clients."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Iterator

from penbalance.diag import Diag
from penbalance.netconv import AF_INET, AF_INET6, AF_UNIX, SockAddr, format_address

CLIENTS_MAX = 2048
TRACKING_TIME = 0


@dataclass
class Client:
    """What is remembered about one client."""

    last: float = 0
    addr: SockAddr | None = None
    server: int | None = None
    connects: int = 0
    csx: int = 0
    crx: int = 0


def _same_client(a: SockAddr, b: SockAddr) -> bool:
    if a.family != b.family:
        return False
    if a.family == AF_UNIX:
        return True
    if a.family in (AF_INET, AF_INET6):
        return (ipaddress.ip_address(a.address.split("%")[0])
                == ipaddress.ip_address(b.address.split("%")[0]))
    return False


class ClientTable:
    """A fixed number of client slots, recycled oldest first.

    With a positive ``tracking_time``, clients not seen for that many seconds
    free their slots.
    """

    def __init__(self, size: int = 0, tracking_time: float = TRACKING_TIME,
                 diag: Diag | None = None) -> None:
        self._clients: list[Client] = []
        self.tracking_time = tracking_time
        self._diag = diag if diag is not None else Diag()
        self.expand(size)

    def __len__(self) -> int:
        return len(self._clients)

    def __getitem__(self, index: int) -> Client:
        return self._clients[index]

    def __iter__(self) -> Iterator[Client]:
        return iter(self._clients)

    def store(self, addr: SockAddr, now: float) -> int:
        """Record a connection from ``addr`` at time ``now``; return its slot."""
        if not self._clients:
            raise IndexError("client table is empty")
        found = empty = oldest = None
        for i, client in enumerate(self._clients):
            if client.addr is not None and _same_client(client.addr, addr):
                found = i
                break
            if self.tracking_time > 0 and client.last + self.tracking_time < now:
                client.last = 0
            if empty is not None:
                continue
            if client.last == 0:
                empty = i
                continue
            if oldest is None or client.last < self._clients[oldest].last:
                oldest = i

        if found is None:
            found = empty if empty is not None else oldest
            if self._diag.enabled(2):
                self._diag.debug("Resetting client stats for slot %d", found)
            client = self._clients[found]
            client.connects = 0
            client.csx = 0
            client.crx = 0
            client.server = None

        client = self._clients[found]
        client.last = now
        client.addr = addr
        client.connects += 1
        if self._diag.enabled(2):
            self._diag.debug("Client %s has index %d", format_address(addr), found)
        return found

    def expand(self, size: int) -> None:
        """Grow the table to ``size`` slots; it never shrinks."""
        if size <= len(self._clients):
            return
        self._clients.extend(Client() for _ in range(size - len(self._clients)))