"""Merge web server access logs, putting back the client addresses that pen logged."""

from __future__ import annotations

import getopt
import re
import sys
import time
from collections import deque
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Callable, Iterator, Sequence, TextIO

from penbalance.diag import Diag, PenError

JITTER = 600
"""Default number of seconds the pen log and server logs may disagree by."""

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

USAGE = (
    "Usage: mergelogs -p penlog [-j jitter] \\\n"
    "        server1:logfile1 [server2:logfile2 ...]\n\n"
    "  -c                Do not use penlog cache\n"
    "  -d                Debugging (repeat for more)\n"
    "  -p penlog         Log file from pen\n"
    "  -j jitter         Jitter in seconds [2]\n"
    "  -r filename       Where to put rejects\n"
    "  -t seconds        Timezone\n"
    "  server:logfile    Web server address and name of logfile\n"
)

_NO_MATCH = sys.maxsize

_TIME_RE = re.compile(
    r"([^/]+)/([^/]+)/([^:]+):([^:]+):([^:]+):\s*(\S+)(?:\s*(\S+))?")
_LOG_RE = re.compile(
    r'([^ ]+)(?![^ ])\s*([^\[\s][^\[]*)\[([^\]]+)\]([^"]+)"([^"]+)"([^\n]+)')
_PENLOG_RE = re.compile(
    r"\s*(\S+)\s+([+-]?\d+)(?!\d)\s*(\S+)(?!\S)\s*(\S[^\n]*)")
_ATOI_RE = re.compile(r"\s*([+-]?\d+)")


def _atoi(text: str) -> int:
    match = _ATOI_RE.match(text)
    return int(match.group(1)) if match else 0


def month_number(name: str) -> int:
    """Return 0..11 for a three-letter month name, or -1 if it is not one."""
    try:
        return MONTHS.index(name)
    except ValueError:
        return -1


def month_name(month: int) -> str:
    """Return the three-letter name of month 0..11."""
    if not 0 <= month <= 11:
        return "no such month"
    return MONTHS[month]


def format_time(t: float) -> str:
    """Format a timestamp in local time the way access logs write it."""
    tm = time.localtime(t)
    return (f"{tm.tm_mday:02d}/{month_name(tm.tm_mon - 1)}/{tm.tm_year:04d}:"
            f"{tm.tm_hour:02d}:{tm.tm_min:02d}:{tm.tm_sec:02d} +0000")


def parse_time(text: str) -> int:
    """Parse an access log time such as ``09/Jan/2002:00:27:15 +0100``.

    The fields are taken as local time and then shifted by the zone offset.
    Raises ValueError when the text has no such shape; returns -1 when the
    time cannot be represented.
    """
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"malformed log time {text!r}")
    dd, mm, yy, hh, mi, ss, zone = match.groups(default="")
    fields = (_atoi(yy), month_number(mm) + 1, _atoi(dd),
              _atoi(hh), _atoi(mi), _atoi(ss), 0, 0, -1)
    try:
        t = int(time.mktime(fields))
    except (OverflowError, ValueError):
        return -1
    if t != -1 and len(zone) == 5:
        offset = 60 * _atoi(zone[3:]) + 3600 * _atoi(zone[1:3])
        t = t - offset if zone[0] == "+" else t + offset
    return t


@dataclass
class LogLine:
    """One access log line cut into the parts that are kept or rewritten."""

    client: str
    ident: str
    time_text: str
    middle: str
    uri: str
    tail: str
    t: int


@dataclass(frozen=True)
class PenlogEntry:
    """One pen log line: which client reached which server for which URI."""

    client: str
    t: int
    server: str
    uri: str


def parse_log_line(line: str) -> LogLine | None:
    """Parse an access log line; return None if it does not have every part."""
    match = _LOG_RE.match(line)
    if match is None:
        return None
    client, ident, time_text, middle, uri, tail = match.groups()
    try:
        t = parse_time(time_text)
    except ValueError:
        return None
    return LogLine(client, ident, time_text, middle, uri, tail, t)


def parse_penlog_line(line: str, tz: int = 0) -> PenlogEntry | None:
    """Parse a pen log line, moving its time back by ``tz`` seconds."""
    match = _PENLOG_RE.match(line)
    if match is None:
        return None
    client, when, server, uri = match.groups()
    return PenlogEntry(client, int(when) - tz, server, uri)


def _search_penlog(penlog: TextIO, server: str, t: int, uri: str,
                   tz: int) -> tuple[str, int]:
    penlog.seek(0)
    best = server
    distance = _NO_MATCH
    for line in penlog:
        entry = parse_penlog_line(line, tz)
        if entry is None or entry.server != server or entry.uri != uri:
            continue
        gap = abs(t - entry.t)
        if gap < distance:
            distance = gap
            best = entry.client
    return best, distance


def best_client_nocache(penlog: TextIO, server: str, t: int, uri: str,
                        tz: int = 0) -> str:
    """Search the whole pen log for the client closest in time to a request.

    Without a match the server name itself is returned.
    """
    best, _ = _search_penlog(penlog, server, t, uri, tz)
    return best


class PenlogCache:
    """A sliding window over the pen log for requests in time order.

    Entries older than ``t - jitter`` are dropped and the log is read until
    an entry newer than ``t + jitter`` is held.
    """

    def __init__(self, penlog: TextIO, servers: Sequence[str], jitter: int = JITTER,
                 tz: int = 0, diag: Diag | None = None) -> None:
        self._penlog = penlog
        self._servers = list(servers)
        self.jitter = jitter
        self.tz = tz
        self._entries: deque[tuple[int, PenlogEntry]] = deque()
        self._diag = diag if diag is not None else Diag()

    def __len__(self) -> int:
        return len(self._entries)

    def _server_number(self, name: str) -> int:
        try:
            return self._servers.index(name)
        except ValueError:
            return -1

    def best_client(self, server: str, t: int, uri: str) -> str:
        """Return the client closest in time to a request, or ``server``."""
        ser = self._server_number(server)

        dropped = 0
        while self._entries and self._entries[0][1].t < t - self.jitter:
            _, entry = self._entries.popleft()
            dropped += 1
            if self._diag.enabled(2):
                self._diag.debug("uncache '%s %d %s %s'", entry.client, entry.t,
                                 entry.server, entry.uri)
        if dropped and self._diag.level:
            self._diag.debug("uncache %d lines", dropped)

        while not (self._entries and self._entries[-1][1].t > t + self.jitter):
            line = self._penlog.readline()
            if not line:
                break
            entry = parse_penlog_line(line, self.tz)
            if entry is None:
                continue
            if self._diag.enabled(2):
                self._diag.debug("cache '%s %d %s %s'", entry.client, entry.t,
                                 entry.server, entry.uri)
            self._entries.append((self._server_number(entry.server), entry))

        best = server
        distance = _NO_MATCH
        for number, entry in self._entries:
            if number != ser or entry.uri != uri:
                continue
            gap = abs(t - entry.t)
            if gap < distance:
                distance = gap
                best = entry.client
        return best


@dataclass
class _Source:
    name: str
    lines: Iterator[str]
    current: LogLine | None = None

    def advance(self, diag: Diag) -> None:
        for line in self.lines:
            parsed = parse_log_line(line)
            if parsed is not None:
                self.current = parsed
                return
            if diag.level:
                diag.debug("Skipping malformed line %r", line)
        self.current = None


def _oldest(sources: Sequence[_Source]) -> _Source | None:
    best = None
    best_t = -1
    for source in sources:
        if source.current is None:
            continue
        if best_t == -1 or source.current.t < best_t:
            best = source
            best_t = source.current.t
    return best


def _merge(penlog: TextIO, servers: Sequence[tuple[str, TextIO]], out: TextIO,
           jitter: int, tz: int, cache: bool, diag: Diag) -> int:
    sources = [_Source(name, iter(stream)) for name, stream in servers]
    for source in sources:
        source.advance(diag)

    finder: Callable[[str, int, str], str]
    if cache:
        finder = PenlogCache(penlog, [name for name, _ in servers],
                             jitter, tz, diag).best_client
    else:
        def finder(server: str, t: int, uri: str) -> str:
            best, distance = _search_penlog(penlog, server, t, uri, tz)
            if diag.level and distance > JITTER:
                diag.debug("Warning: time difference %d", distance)
            return best

    written = 0
    while (source := _oldest(sources)) is not None:
        line = source.current
        stamp = format_time(line.t)
        client = finder(source.name, line.t, line.uri)
        if diag.enabled(2):
            diag.debug("\tclient = '%s' => '%s'", line.client, client)
            diag.debug("\ttime = '%s' => %d => '%s'", line.time_text, line.t, stamp)
            diag.debug("\turi = '%s'", line.uri)
        out.write(f'{client} {line.ident}[{stamp}]{line.middle}"{line.uri}"{line.tail}\n')
        written += 1
        source.advance(diag)
    return written


def merge(penlog: TextIO, servers: Sequence[tuple[str, TextIO]], out: TextIO,
          jitter: int = JITTER, tz: int = 0, cache: bool = True) -> int:
    """Merge server logs in time order into ``out``; return the lines written.

    ``servers`` holds (server name, log stream) pairs. Each line's client is
    replaced by the client pen logged for the same server and URI.
    """
    return _merge(penlog, servers, out, jitter, tz, cache, Diag())


def _usage() -> int:
    sys.stdout.write(USAGE)
    return 0


def _run(pfile: str | None, targets: Sequence[str], jitter: int, tz: int,
         cache: bool, diag: Diag) -> int:
    with ExitStack() as stack:
        if pfile is None:
            diag.error("pfile null")
        try:
            penlog = stack.enter_context(open(pfile, encoding="utf-8", errors="replace"))
        except OSError:
            diag.error("pfp null")
        servers = []
        for target in targets:
            name, sep, filename = target.partition(":")
            if not sep:
                diag.error("Bogus server '%s'", target)
            try:
                stream = stack.enter_context(
                    open(filename, encoding="utf-8", errors="replace"))
            except OSError:
                diag.error("Can't open logfile '%s'", filename)
            servers.append((name, stream))
        _merge(penlog, servers, sys.stdout, jitter, tz, cache, diag)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the mergelogs command; return the exit status."""
    args = sys.argv[1:] if argv is None else list(argv)
    diag = Diag()
    try:
        opts, rest = getopt.gnu_getopt(args, "p:a:j:t:cd")
    except getopt.GetoptError as exc:
        print(f"mergelogs: {exc}", file=sys.stderr)
        return _usage()

    pfile = None
    jitter = JITTER
    tz = 0
    cache = True
    for opt, value in opts:
        if opt == "-p":
            pfile = value
        elif opt == "-j":
            jitter = _atoi(value)
        elif opt == "-t":
            tz = _atoi(value)
        elif opt == "-c":
            cache = False
        elif opt == "-d":
            diag.level += 1
        else:
            return _usage()

    if not rest:
        return _usage()
    try:
        return _run(pfile, rest, jitter, tz, cache, diag)
    except PenError:
        return 1


if __name__ == "__main__":
    sys.exit(main())