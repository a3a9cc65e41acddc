# penbalance

Pieces of a small TCP/UDP load balancer, and a command that merges web
server access logs with the balancer's own log so that each request shows
the real client address.

The package has no dependencies outside the standard library.

## What is in the package

- `penbalance.acl`: `AclTable` holds ten numbered access lists (0 to 9)
  made of `Ipv4Entry`, `Ipv6Entry` and `GeoEntry` entries. You add entries
  with `add_ipv4`, `add_ipv6` and `add_geo`, and clear a list with `delete`.
  `match(a, addr)` returns the verdict of the first entry that matches. If
  no entry matches, it returns the opposite of the last entry's verdict. A
  list number outside 0..9 never matches, and a Unix socket address always
  matches. Country entries need a `country_lookup` callable that maps a
  `SockAddr` to a two-letter code. Without one they never match. `save(fp)`
  writes every list as `no acl N` / `acl N permit|deny ...` lines.
  `ipv6_mask(length)` returns a 16-byte prefix mask.
- `penbalance.netconv`: `SockAddr` (family, address, port) and helpers:
  - `parse_address` takes a path containing `/`, an IP address or a host
    name. It raises `ValueError` if the name cannot be resolved.
  - `format_address`, `address_port` (Unix sockets report port 1),
    `with_port`, `describe_address` and `sockaddr_size`.
  - `get_port` resolves a service name or number.
- `penbalance.dlist`: `NodePool`, a fixed pool of nodes that hold circular
  doubly linked lists. A list is named by one of its nodes, and `None` is
  the empty list. `NodePoolFullError` is raised when every node is in use.
- `penbalance.client`: `ClientTable` is a fixed set of `Client` slots.
  `store(addr, now)` finds the client's slot, or else an empty one, or else
  the oldest one. With a positive `tracking_time`, clients not seen for that
  long free their slots.
- `penbalance.conn`: `ConnectionTable` holds `Connection` slots with
  `ConnState` flags. It also:
  - maps file descriptors to slots (`set_fd`, `conn_for_fd`);
  - stores and closes connections (`store`, `close`), raising
    `ConnectionTableFullError` when there is no room;
  - keeps the pending queue in a `NodePool`;
  - tracks idle connections (`is_idler`, `close_idlers`).
  
  In UDP mode, busy slots are marked half dead and then recycled.
- `penbalance.event`: `EventPoller` is built on `selectors`. Use `add`,
  `arm`, `delete`, `wait(timeout)` and `close` to watch descriptors for
  `EventMask.READ` / `EventMask.WRITE`. It is also a context manager.
- `penbalance.dsr`: direct server return, working on raw Ethernet frames
  as bytes. `DsrBalancer.handle_frame(frame)` returns the frame to send,
  or `None`:
  - it answers ARP requests for the balancer's address;
  - it learns servers' hardware addresses from ARP replies;
  - it forwards TCP (or, with `udp=True`, UDP) frames addressed to the
    balancer to a `RealServer` chosen by a weighted `HashIndex`;
  - it answers SYNs to addresses matched by the tarpit access list with a
    SYN+ACK.
  
  When a frame cannot be forwarded yet, because no server is available or
  the server's hardware address is unknown, `LookupError` is raised.
  `arp_requests(now)` returns the ARP requests to send. Helpers:
  `build_arp_request`, `tcp_checksum`, `mac_to_str`, `ethertype_name` and
  `protocol_name`.
- `penbalance.mergelogs`: the log merger (see below). Its parts can also be
  used on their own: `merge`, `parse_log_line`, `parse_penlog_line`,
  `parse_time`, `format_time`, `PenlogCache` and `best_client_nocache`.
- `penbalance.diag`: `Diag` writes debug messages, timestamped on standard
  error in the foreground and through `logging` otherwise. Its `error`
  method reports a message and raises `PenError`.

## Merging logs

When web servers sit behind the balancer, their access logs show the
balancer as the client. Pass the balancer's log with `-p`, and each
server's log as `server:logfile`:

```
penbalance-mergelogs -p pen.log 10.0.0.1:access1.log 10.0.0.2:access2.log > merged.log
```

Each balancer log line has the form `client time server uri`. The merger
reads each access log line and finds the balancer log entry for the same
server and URI that lies closest in time. It replaces the line's client
field with that entry's client. If there is no such entry, the server name
is used. Lines from all servers are written to standard output in time
order, with the timestamp rewritten in local time.

Options:

- `-p penlog`: the balancer's log file. This option is required.
- `-j jitter`: the window, in seconds, kept by the sliding cache. The
  default is 600.
- `-t seconds`: subtracted from every balancer log timestamp.
- `-c`: search the whole balancer log for every line instead of using the
  sliding cache.
- `-d`: print debugging output. Repeat it for more.

Without any `server:logfile` argument, the usage text is printed. The exit
status is 1 in these cases: the balancer log is missing or unreadable, an
argument has no `:`, or a log file cannot be opened.

From Python:

```python
import io
from penbalance.mergelogs import merge

penlog = io.StringIO("192.0.2.7 1010050000 web1 GET / HTTP/1.0\n")
access = io.StringIO('10.0.0.9 - - [03/Jan/2002:10:00:00 +0000] "GET / HTTP/1.0" 200 12\n')
out = io.StringIO()
merge(penlog, [("web1", access)], out)
```

## Using the access lists

```python
import io
from penbalance.acl import AclTable
from penbalance.netconv import parse_address

acls = AclTable()
acls.add_ipv4(0, "192.168.0.0", "255.255.0.0", permit=True)

acls.match(0, parse_address("192.168.1.7"))  # True
acls.match(0, parse_address("10.1.2.3"))     # False

out = io.StringIO()
acls.save(out)
```

## What the package does not do

The package provides the balancer's tables and decision logic, but it does
not run a balancer:

- There is no command that listens for connections and proxies them.
- Nothing reads a configuration file or a control socket.
- `DsrBalancer` neither opens raw sockets nor sends frames. It only
  computes them.
- No country database is included. Country entries in access lists work
  only with a `country_lookup` you supply.

The only command is `penbalance-mergelogs`.