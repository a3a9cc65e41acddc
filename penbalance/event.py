"""Readiness notification for sockets, on top of the best selector available."""

from __future__ import annotations

import enum
import selectors
from contextlib import suppress

from penbalance.diag import Diag

TIMEOUT = 3
"""Default number of seconds to wait for events."""


class EventMask(enum.IntFlag):
    """Events a descriptor can be armed for or report."""

    NONE = 0
    READ = 0x10000
    WRITE = 0x20000
    ERR = 0x40000


def _native(events: EventMask | None) -> int:
    if events is None:
        return 0
    native = 0
    if events & EventMask.READ:
        native |= selectors.EVENT_READ
    if events & EventMask.WRITE:
        native |= selectors.EVENT_WRITE
    return native


def _from_native(native: int) -> EventMask:
    events = EventMask.NONE
    if native & selectors.EVENT_READ:
        events |= EventMask.READ
    if native & selectors.EVENT_WRITE:
        events |= EventMask.WRITE
    return events


class EventPoller:
    """Watch descriptors for readability and writability.

    A descriptor is added once, re-armed as often as needed and deleted just
    before it is closed. Arming a descriptor for no events keeps it known but
    silent.
    """

    def __init__(self, selector: selectors.BaseSelector | None = None,
                 diag: Diag | None = None) -> None:
        self._selector = selector if selector is not None else selectors.DefaultSelector()
        self._armed: dict[int, EventMask] = {}
        self._diag = diag if diag is not None else Diag()

    def __enter__(self) -> EventPoller:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _trace(self, msg: str, *args) -> None:
        if self._diag.enabled(2):
            self._diag.debug(msg, *args)

    def _apply(self, fd: int, old: EventMask | None, new: EventMask) -> None:
        before, after = _native(old), _native(new)
        try:
            if before and after:
                self._selector.modify(fd, after)
            elif after:
                self._selector.register(fd, after)
            elif before:
                self._selector.unregister(fd)
        except (OSError, ValueError, KeyError) as exc:
            self._diag.error("event_ctl: %s", exc)

    def add(self, fd: int, events: EventMask) -> None:
        """Start watching ``fd`` for ``events``."""
        self._trace("event_add(fd=%d, events=%d)", fd, int(events))
        if fd in self._armed:
            self._diag.error("event_add: fd %d is already registered", fd)
        new = EventMask(events)
        self._armed[fd] = new
        self._apply(fd, None, new)

    def arm(self, fd: int, events: EventMask) -> None:
        """Change the events ``fd`` is watched for."""
        self._trace("event_arm(fd=%d, events=%d)", fd, int(events))
        if fd not in self._armed:
            self._diag.error("event_arm: fd %d is not registered", fd)
        old = self._armed[fd]
        new = EventMask(events)
        self._armed[fd] = new
        self._apply(fd, old, new)

    def delete(self, fd: int) -> None:
        """Stop watching ``fd``; unknown descriptors are ignored."""
        self._trace("event_delete(fd=%d)", fd)
        old = self._armed.pop(fd, None)
        if _native(old):
            with suppress(OSError, KeyError, ValueError):
                self._selector.unregister(fd)

    def wait(self, timeout: float = TIMEOUT) -> list[tuple[int, EventMask]]:
        """Wait up to ``timeout`` seconds and return the ready descriptors."""
        self._trace("event_wait()")
        try:
            ready = self._selector.select(timeout)
        except OSError as exc:
            self._diag.error("Error on event wait: %s", exc)
        self._trace("event wait returns %d", len(ready))
        return [(key.fd, _from_native(native)) for key, native in ready]

    def close(self) -> None:
        """Release the underlying selector."""
        self._armed.clear()
        self._selector.close()