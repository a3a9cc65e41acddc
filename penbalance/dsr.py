"""Direct server return: answer ARP, tarpit SYNs and forward frames to real servers."""

from __future__ import annotations

import ipaddress
import operator
import re
import struct
from dataclasses import dataclass, field
from functools import reduce
from typing import Sequence

from penbalance.acl import AclTable
from penbalance.diag import Diag
from penbalance.netconv import AF_INET, SockAddr

HASH_INDEX_SIZE = 256
ARP_FRAME_SIZE = 42
ETHERTYPE_ARP = 0x0806
ETHERTYPE_IPV4 = 0x0800
PROTO_TCP = 6
PROTO_UDP = 17
TARPIT_SEQ = 42
ARP_REFRESH = 60

_ZERO_MAC = bytes(6)
_ETH = 14


def mac_to_str(mac: bytes) -> str:
    """Format the first six bytes of ``mac`` as colon separated hex."""
    return ":".join(f"{b:02x}" for b in bytes(mac[:6]))


def ethertype_name(ethertype: int) -> str:
    """Name an Ethernet frame type."""
    return {
        0x0800: "IPv4",
        0x0806: "ARP",
        0x8100: "802.1Q",
        0x86DD: "IPv6",
    }.get(ethertype, "Unknown")


def protocol_name(proto: int) -> str:
    """Name an IP protocol number."""
    return {0x01: "ICMP", 0x06: "TCP", 0x17: "UDP"}.get(proto, "Other")


def tcp_checksum(pseudo_header: bytes, segment: bytes) -> int:
    """Return the ones' complement checksum over a pseudo header and a segment."""
    data = bytes(pseudo_header) + bytes(segment)
    if len(data) % 2:
        data += b"\0"
    total = sum(word for (word,) in struct.iter_unpack(">H", data))
    total = (total & 0xFFFF) + (total >> 16)
    return (total ^ 0xFFFF) & 0xFFFF


def _packed_ipv4(ip) -> bytes:
    return ipaddress.IPv4Address(ip).packed


def build_arp_request(our_hw: bytes, target_ip) -> bytes:
    """Build a broadcast ARP request asking who has ``target_ip``."""
    our_hw = bytes(our_hw)
    if len(our_hw) != 6:
        raise ValueError(f"hardware address must be 6 bytes, not {len(our_hw)}")
    return (b"\xff" * 6 + our_hw
            + struct.pack(">HHHBBH", ETHERTYPE_ARP, 1, ETHERTYPE_IPV4, 6, 4, 1)
            + our_hw + bytes(4) + bytes(6) + _packed_ipv4(target_ip))


@dataclass
class RealServer:
    """A real server behind the balancer; ``ip`` is None for an unused slot."""

    ip: str | None = None
    weight: int = 0
    available: bool = True
    hwaddr: bytes = _ZERO_MAC

    @property
    def unused(self) -> bool:
        return self.ip is None

    @property
    def usable(self) -> bool:
        return self.ip is not None and self.available

    @property
    def hw_known(self) -> bool:
        return bytes(self.hwaddr) != _ZERO_MAC


@dataclass
class HashIndex:
    """Maps a hash of the client address to a server, weighted by server weight."""

    slots: list[int] = field(default_factory=lambda: [0] * HASH_INDEX_SIZE)
    valid: bool = False
    diag: Diag = field(default_factory=Diag)

    def rebuild(self, servers: Sequence[RealServer]) -> bool:
        """Share the slots out among usable servers; False if there are none."""
        shares = [(max(s.weight, 1) if s.usable else -1) for s in servers]
        total_weight = sum(w for w in shares if w > 0)
        if total_weight == 0:
            self.diag.debug("No available servers, can't rebuild")
            return False

        remaining = HASH_INDEX_SIZE
        for i, weight in enumerate(shares):
            if weight == -1:
                continue
            got = remaining * weight // total_weight
            remaining -= got
            total_weight -= weight
            shares[i] = got

        slot = 0
        server = 0
        for _ in range(HASH_INDEX_SIZE):
            while shares[server] <= 0:
                server += 1
            self.slots[slot] = server
            shares[server] -= 1
            slot = (slot + 3) % HASH_INDEX_SIZE
        self.valid = True
        return True

    def invalidate(self) -> None:
        """Force a rebuild before the next selection."""
        self.valid = False

    def select(self, servers: Sequence[RealServer], ip, port: int,
               roundrobin: bool) -> int | None:
        """Return the server for a client, or None when none is available."""
        h = reduce(operator.xor, _packed_ipv4(ip))
        if roundrobin:
            h ^= (port >> 8) & 0xFF
            h ^= port & 0xFF
        if not self.valid and not self.rebuild(servers):
            return None
        server = self.slots[h]
        if self.diag.enabled(3):
            self.diag.debug("select_server returning server %d for hash %d", server, h)
        return server


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


class DsrBalancer:
    """Decide what to do with raw Ethernet frames seen on the balancer's interface.

    ``listen`` is ``"ip"`` or ``"ip:port"``; with port 0 every port is
    forwarded. Frames that cannot be forwarded yet raise LookupError.
    """

    def __init__(self, listen: str, our_hw: bytes, servers: list[RealServer], *,
                 udp: bool = False, roundrobin: bool = False,
                 acls: AclTable | None = None, tarpit_acl: int = -1,
                 diag: Diag | None = None) -> None:
        parts = [p for p in listen.split(":") if p]
        ip_text = parts[0] if parts else ""
        self.port = _atoi(parts[1]) if len(parts) > 1 else 0
        self._diag = diag if diag is not None else Diag()
        try:
            self.our_ip = _packed_ipv4(ip_text)
        except ValueError as exc:
            self._diag.debug("Address %s is not valid", ip_text)
            raise ValueError(f"Address {ip_text} is not valid") from exc
        self.our_hw = bytes(our_hw)
        if len(self.our_hw) != 6:
            raise ValueError(f"hardware address must be 6 bytes, not {len(self.our_hw)}")
        self.servers = servers
        self.udp = udp
        self.roundrobin = roundrobin
        self.acls = acls
        self.tarpit_acl = tarpit_acl
        self.hash_index = HashIndex(diag=self._diag)
        self._last_arp = 0.0

    def _trace(self, msg: str, *args) -> None:
        if self._diag.enabled(2):
            self._diag.debug(msg, *args)

    def _tarpitted(self, ip: bytes) -> bool:
        if self.acls is None:
            return False
        addr = SockAddr(AF_INET, str(ipaddress.IPv4Address(ip)))
        return self.acls.match(self.tarpit_acl, addr)

    def handle_frame(self, frame: bytes) -> bytes | None:
        """Return the frame to send in response to ``frame``, or None."""
        if len(frame) < _ETH:
            raise ValueError(f"frame of {len(frame)} bytes is too short")
        buf = bytearray(frame)
        (ethertype,) = struct.unpack_from(">H", buf, 12)
        self._trace("MAC destination: %s", mac_to_str(buf[0:6]))
        self._trace("MAC source: %s", mac_to_str(buf[6:12]))
        self._trace("EtherType: %s", ethertype_name(ethertype))
        if ethertype == ETHERTYPE_ARP:
            return self._arp_frame(buf)
        if ethertype == ETHERTYPE_IPV4:
            return self._ipv4_frame(buf)
        self._trace("Other (%x)", ethertype)
        return None

    def _arp_frame(self, buf: bytearray) -> bytes | None:
        if len(buf) < ARP_FRAME_SIZE:
            raise ValueError(f"ARP frame of {len(buf)} bytes is too short")
        htype, ptype = struct.unpack_from(">HH", buf, 14)
        (oper,) = struct.unpack_from(">H", buf, 20)
        sha, spa = bytes(buf[22:28]), bytes(buf[28:32])
        tpa = bytes(buf[38:42])
        self._trace("ARP: htype %d, ptype 0x%x, oper %d", htype, ptype, oper)
        if htype != 1 or ptype != ETHERTYPE_IPV4:
            return None
        if oper == 1 and (tpa == self.our_ip or self._tarpitted(tpa)):
            self._trace("We should reply to this.")
            buf[0:6] = sha
            buf[6:12] = self.our_hw
            struct.pack_into(">H", buf, 20, 2)
            buf[32:38] = sha
            buf[38:42] = spa
            buf[22:28] = self.our_hw
            buf[28:32] = tpa
            return bytes(buf)
        if oper == 2:
            self._store_hwaddr(spa, sha)
        return None

    def _store_hwaddr(self, ip: bytes, hw: bytes) -> None:
        self._trace("Real address %s has hardware address %s",
                    ipaddress.IPv4Address(ip), mac_to_str(hw))
        for server in self.servers:
            if server.ip is not None and _packed_ipv4(server.ip) == ip:
                server.hwaddr = hw

    def _ipv4_frame(self, buf: bytearray) -> bytes | None:
        if len(buf) < _ETH + 20:
            raise ValueError(f"IPv4 frame of {len(buf)} bytes is too short")
        ihl = (buf[_ETH] & 0xF) * 4
        proto = buf[_ETH + 9]
        src_ip = bytes(buf[_ETH + 12:_ETH + 16])
        dst_ip = bytes(buf[_ETH + 16:_ETH + 20])
        l4 = _ETH + ihl
        self._trace("Protocol: %d / %s", proto, protocol_name(proto))

        if self.udp:
            if proto == PROTO_UDP and dst_ip == self.our_ip:
                if len(buf) < l4 + 4:
                    raise ValueError("UDP segment is truncated")
                src_port, dst_port = struct.unpack_from(">HH", buf, l4)
                return self._forward(buf, src_ip, src_port, dst_port)
            return None

        if proto != PROTO_TCP:
            return None
        if len(buf) < l4 + 20:
            raise ValueError("TCP segment is truncated")
        if self._tarpitted(dst_ip):
            return self._tarpit(buf, l4, src_ip, dst_ip)
        if dst_ip == self.our_ip:
            src_port, dst_port = struct.unpack_from(">HH", buf, l4)
            return self._forward(buf, src_ip, src_port, dst_port)
        return None

    def _forward(self, buf: bytearray, src_ip: bytes, src_port: int,
                 dst_port: int) -> bytes | None:
        server = self.hash_index.select(self.servers, src_ip, src_port, self.roundrobin)
        if server is None:
            self._diag.debug("Dropping frame, nowhere to put it")
            raise LookupError("no available server for frame")
        real = self.servers[server]
        if not real.hw_known:
            self._trace("Real hw addr unknown")
            raise LookupError(f"hardware address of server {server} unknown")
        self._trace("Source port = %d, destination port = %d", src_port, dst_port)
        if self.port and dst_port != self.port:
            return None
        buf[0:6] = real.hwaddr
        buf[6:12] = self.our_hw
        return bytes(buf)

    def _tarpit(self, buf: bytearray, l4: int, src_ip: bytes,
                dst_ip: bytes) -> bytes | None:
        (flags,) = struct.unpack_from(">H", buf, l4 + 12)
        if not flags & 0x0002:
            return None
        self._trace("We should tarpit this")
        pseudo = dst_ip + src_ip + struct.pack(">BBH", 0, PROTO_TCP, 40)
        buf[0:6], buf[6:12] = buf[6:12], buf[0:6]
        buf[_ETH + 12:_ETH + 16] = dst_ip
        buf[_ETH + 16:_ETH + 20] = src_ip
        src_port, dst_port, seq = struct.unpack_from(">HHI", buf, l4)
        struct.pack_into(">HHII", buf, l4, dst_port, src_port, TARPIT_SEQ,
                         (seq + 1) & 0xFFFFFFFF)
        struct.pack_into(">H", buf, l4 + 12, (5 << 12) | 0x0012)
        struct.pack_into(">H", buf, l4 + 16, 0)
        struct.pack_into(">H", buf, l4 + 18, 0)
        checksum = tcp_checksum(pseudo, buf[l4:l4 + 20])
        struct.pack_into(">H", buf, l4 + 16, checksum)
        options = max(4 * ((flags >> 12) - 5), 0)
        end = min(l4 + 20 + options, len(buf))
        buf[l4 + 20:end] = bytes(end - (l4 + 20))
        return bytes(buf)

    def arp_requests(self, now: float) -> list[bytes]:
        """Return ARP requests for servers whose hardware address needs finding."""
        since = now - self._last_arp
        frames: list[bytes] = []
        if not since:
            return frames
        for server in self.servers:
            if server.unused:
                continue
            if server.hw_known and since < ARP_REFRESH:
                continue
            frames.append(build_arp_request(self.our_hw, server.ip))
            self._last_arp = now
        return frames