"""The connection table and idle connection management."""

from __future__ import annotations

import enum
import os
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from penbalance.diag import Diag
from penbalance.dlist import NodePool
from penbalance.event import EventPoller

CONNECTIONS_MAX = 500


class ConnState(enum.IntFlag):
    """Connection state bits."""

    UNUSED = 0
    IN_PROGRESS = 1
    CONNECTED = 2
    CLOSED_UP = 4
    CLOSED_DOWN = 8
    CLOSED = CLOSED_UP | CLOSED_DOWN
    HALFDEAD = 16
    WAIT_PEEK = 32


@dataclass
class Connection:
    """One proxied connection between a client (down) and a server (up)."""

    state: ConnState = ConnState.UNUSED
    t: float = 0
    downfd: int | None = None
    upfd: int | None = None
    downb: bytes = b""
    upb: bytes = b""
    ssx: int = 0
    srx: int = 0
    csx: int = 0
    crx: int = 0
    client: int | None = None
    initial: int | None = None
    server: int | None = None
    pend: int | None = None
    ssl: Any = None
    reneg: float = 0


class ConnectionTableFullError(Exception):
    """Raised when no connection slot can be found."""


class ConnectionTable:
    """Slots for simultaneous connections and the map from descriptors to slots.

    ``release_server`` is called with a server index when a connection that
    used that server closes. ``close_fd`` closes descriptors.
    """

    def __init__(self, size: int = CONNECTIONS_MAX, *, udp: bool = False,
                 tcp_fastclose: ConnState = ConnState.UNUSED,
                 poller: EventPoller | None = None,
                 listenfd: int | None = None,
                 pending: NodePool | None = None,
                 release_server: Callable[[int], None] | None = None,
                 close_fd: Callable[[int], None] = os.close,
                 diag: Diag | None = None) -> None:
        self._conns: list[Connection] = []
        self._fd2conn: dict[int, int] = {}
        self.udp = udp
        self.tcp_fastclose = tcp_fastclose
        self.poller = poller
        self.listenfd = listenfd
        self.pending = pending if pending is not None else NodePool(max(size, 1))
        self.pending_list: int | None = None
        self.pending_queue = 0
        self.release_server = release_server
        self.close_fd = close_fd
        self.used = 0
        self.last = 0
        self.idlers = 0
        self.idlers_wanted = 0
        self._diag = diag if diag is not None else Diag()
        self.expand(size)

    def __len__(self) -> int:
        return len(self._conns)

    def __getitem__(self, conn: int) -> Connection:
        return self._conns[conn]

    def __iter__(self) -> Iterator[Connection]:
        return iter(self._conns)

    def _trace(self, level: int, msg: str, *args) -> None:
        if self._diag.enabled(level):
            self._diag.debug(msg, *args)

    def set_fd(self, fd: int, conn: int | None) -> None:
        """Map ``fd`` to connection ``conn``, or forget it when ``conn`` is None."""
        self._trace(3, "fd2conn_set(fd=%d, conn=%s)", fd, conn)
        if fd < 0:
            self._diag.error("fd2conn_set(fd = %d, conn = %s)", fd, conn)
        if conn is None:
            self._fd2conn.pop(fd, None)
        else:
            self._fd2conn[fd] = conn

    def conn_for_fd(self, fd: int) -> int | None:
        """Return the connection using ``fd``, or None."""
        return self._fd2conn.get(fd)

    def closing_time(self, conn: int) -> bool:
        """Return True when connection ``conn`` should now be closed."""
        c = self._conns[conn]
        closed = c.state & ConnState.CLOSED
        if closed == ConnState.CLOSED:
            return True
        if not c.downb and not c.upb:
            return bool(closed & self.tcp_fastclose)
        return False

    def store(self, downfd: int | None, client: int | None, ssl: Any = None) -> int:
        """Put a new connection from ``downfd`` in a free slot and return it.

        For UDP, busy slots passed over are marked half dead and a half dead
        slot is recycled. Raises ConnectionTableFullError, after closing
        ``downfd``, when there is no room.
        """
        size = len(self._conns)
        if size == 0:
            if downfd is not None:
                self.close_fd(downfd)
            raise ConnectionTableFullError("connection table has no slots")
        i = self.last
        while True:
            c = self._conns[i]
            if c.state == ConnState.UNUSED or c.state & ConnState.HALFDEAD:
                break
            if self.udp:
                c.state |= ConnState.HALFDEAD
            i = (i + 1) % size
            if i == self.last:
                break

        if self._conns[i].state & ConnState.HALFDEAD:
            self._trace(2, "Recycling halfdead connection %d", i)
            self.close(i)

        c = self._conns[i]
        if c.state != ConnState.UNUSED:
            if self._diag.level:
                self._diag.debug("Connection table full (%d slots), can't store "
                                 "connection.\nTry restarting with -x %d",
                                 size, 2 * size)
            if downfd is not None:
                with suppress(OSError):
                    self.close_fd(downfd)
            raise ConnectionTableFullError(f"connection table full ({size} slots)")

        self.last = i
        self.used += 1
        self._trace(2, "incrementing connections_used to %d for connection %d",
                    self.used, i)
        c.upfd = None
        c.downfd = downfd
        if downfd is not None:
            self.set_fd(downfd, i)
        c.ssl = ssl
        c.client = client
        c.initial = None
        c.server = None
        c.srx = c.ssx = 0
        c.crx = c.csx = 0
        self._trace(2, "store_conn: conn = %d, downfd = %s, connections_used = %d",
                    i, downfd, self.used)
        return i

    def is_idler(self, conn: int) -> bool:
        """Return True for a connected slot that has no client."""
        c = self._conns[conn]
        return bool(c.state & ConnState.CONNECTED) and c.client is None

    def _close_side(self, fd: int | None) -> None:
        if fd is None or fd == self.listenfd:
            return
        if self.poller is not None:
            self.poller.delete(fd)
        with suppress(OSError):
            self.close_fd(fd)
        self.set_fd(fd, None)

    def close(self, conn: int) -> None:
        """Close connection ``conn`` and free its slot."""
        c = self._conns[conn]
        server = c.server
        if server is not None and self.release_server is not None:
            self.release_server(server)

        self._close_side(c.upfd)
        if c.ssl is not None:
            try:
                c.ssl.unwrap()
            except (OSError, ValueError) as exc:
                self._trace(3, "SSL shutdown failed: %s", exc)
            c.ssl = None
        self._close_side(c.downfd)

        if self.is_idler(conn):
            self.idlers -= 1
        c.upfd = c.downfd = None
        c.downb = b""
        c.upb = b""
        self.used -= 1
        self._trace(2, "decrementing connections_used to %d for connection %d",
                    self.used, conn)
        if self.used < 0:
            self._diag.debug("connections_used = %d. Resetting.", self.used)
            self.used = 0
        if c.state & ConnState.IN_PROGRESS:
            self.pending_list = self.pending.remove(c.pend)
            self.pending_queue -= 1
        c.state = ConnState.UNUSED
        self._trace(2, "close_conn: Closing connection %d to server %s; "
                    "connections_used = %d\n"
                    "\tRead %d from client, wrote %d to server\n"
                    "\tRead %d from server, wrote %d to client",
                    conn, server, self.used, c.crx, c.ssx, c.srx, c.csx)

    def expand(self, size: int) -> None:
        """Grow the table to ``size`` slots; it never shrinks."""
        self._trace(1, "expand_conntable(%d)", size)
        if size < len(self._conns):
            return
        self._conns.extend(Connection() for _ in range(size - len(self._conns)))

    def close_idlers(self, n: int) -> int:
        """Close up to ``n`` idle connections; return how many were closed."""
        self._trace(2, "close_idlers(%d)", n)
        closed = 0
        for conn in range(len(self._conns)):
            if closed >= n:
                break
            if self.is_idler(conn):
                self._trace(3, "Closing idling connection %d", conn)
                self.close(conn)
                closed += 1
        return closed