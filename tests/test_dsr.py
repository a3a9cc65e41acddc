import ipaddress
import struct

import pytest

from penbalance.acl import AclTable
from penbalance.dsr import (
    DsrBalancer,
    HashIndex,
    RealServer,
    build_arp_request,
    ethertype_name,
    mac_to_str,
    protocol_name,
    tcp_checksum,
)

OUR_HW = bytes.fromhex("020000000001")
CLIENT_HW = bytes.fromhex("020000000002")
SERVER_HW = bytes.fromhex("020000000003")
OUR_IP = "192.0.2.1"
CLIENT_IP = "198.51.100.7"
SERVER_IP = "192.0.2.10"
TARPIT_IP = "192.0.2.99"


def ip(text):
    return ipaddress.IPv4Address(text).packed


def arp(oper, sha, spa, tha, tpa, dst=b"\xff" * 6):
    return (dst + sha + struct.pack(">HHHBBH", 0x0806, 1, 0x0800, 6, 4, oper)
            + sha + ip(spa) + tha + ip(tpa))


def tcp_frame(src, dst, sport, dport, seq=1000, flags=0x5002, proto=6):
    eth = OUR_HW + CLIENT_HW + struct.pack(">H", 0x0800)
    iph = bytes([0x45, 0]) + struct.pack(">HHH", 40, 0, 0) + bytes([64, proto, 0, 0])
    iph += ip(src) + ip(dst)
    tcp = struct.pack(">HHIIHHHH", sport, dport, seq, 0, flags, 1024, 0, 0)
    return eth + iph + tcp


def balancer(servers=None, **kw):
    if servers is None:
        servers = [RealServer(ip=SERVER_IP)]
    return DsrBalancer(OUR_IP, OUR_HW, servers, **kw)


def test_mac_to_str():
    assert mac_to_str(bytes.fromhex("0a0b0c0d0e0f")) == "0a:0b:0c:0d:0e:0f"


def test_names():
    assert ethertype_name(0x0800) == "IPv4"
    assert ethertype_name(0x86DD) == "IPv6"
    assert ethertype_name(0x1234) == "Unknown"
    assert protocol_name(6) == "TCP"
    assert protocol_name(1) == "ICMP"
    assert protocol_name(99) == "Other"


def test_tcp_checksum_worked_example():
    assert tcp_checksum(b"", bytes.fromhex("0001f203f4f5f6f7")) == 0x220D


def test_tcp_checksum_verifies_to_zero():
    data = bytes.fromhex("0001f203f4f5f6f7")
    cs = tcp_checksum(b"", data)
    assert tcp_checksum(data, struct.pack(">H", cs)) == 0


def test_build_arp_request():
    frame = build_arp_request(OUR_HW, SERVER_IP)
    assert len(frame) == 42
    assert frame[:6] == b"\xff" * 6
    assert frame[6:12] == OUR_HW
    assert frame[12:14] == b"\x08\x06"
    assert frame[20:22] == b"\x00\x01"
    assert frame[38:42] == ip(SERVER_IP)


def test_build_arp_request_bad_hw():
    with pytest.raises(ValueError):
        build_arp_request(b"\x01\x02", SERVER_IP)


def test_hash_index_fills_all_slots():
    servers = [RealServer(ip="192.0.2.10", weight=3),
               RealServer(ip="192.0.2.11", available=False),
               RealServer(ip="192.0.2.12", weight=1)]
    index = HashIndex()
    assert index.rebuild(servers)
    assert index.valid
    assert len(index.slots) == 256
    assert 1 not in index.slots
    assert index.slots.count(0) > index.slots.count(2) > 0


def test_hash_index_equal_weights():
    servers = [RealServer(ip="192.0.2.10"), RealServer(ip="192.0.2.11")]
    index = HashIndex()
    index.rebuild(servers)
    assert index.slots.count(0) == index.slots.count(1)


def test_hash_index_no_servers():
    index = HashIndex()
    servers = [RealServer(), RealServer(ip=SERVER_IP, available=False)]
    assert index.rebuild(servers) is False
    assert index.select(servers, CLIENT_IP, 80, False) is None


def test_hash_index_port_ignored_without_roundrobin():
    servers = [RealServer(ip="192.0.2.10"), RealServer(ip="192.0.2.11")]
    index = HashIndex()
    assert index.select(servers, CLIENT_IP, 1, False) == index.select(servers, CLIENT_IP, 2, False)
    index.invalidate()
    assert index.valid is False
    assert index.select(servers, CLIENT_IP, 1, True) in (0, 1)
    assert index.valid


def test_invalid_listen_address():
    with pytest.raises(ValueError):
        DsrBalancer("not-an-ip:80", OUR_HW, [])


def test_listen_port_parsed():
    assert balancer().port == 0
    assert DsrBalancer(OUR_IP + ":8080", OUR_HW, []).port == 8080


def test_arp_request_for_us_is_answered():
    frame = arp(1, CLIENT_HW, CLIENT_IP, bytes(6), OUR_IP)
    reply = balancer().handle_frame(frame)
    assert reply[:6] == CLIENT_HW
    assert reply[6:12] == OUR_HW
    assert reply[20:22] == b"\x00\x02"
    assert reply[22:28] == OUR_HW
    assert reply[28:32] == ip(OUR_IP)
    assert reply[32:38] == CLIENT_HW
    assert reply[38:42] == ip(CLIENT_IP)


def test_arp_request_for_other_is_ignored():
    frame = arp(1, CLIENT_HW, CLIENT_IP, bytes(6), "192.0.2.50")
    assert balancer().handle_frame(frame) is None


def test_arp_request_for_tarpit_address():
    acls = AclTable()
    acls.add_ipv4(1, TARPIT_IP, "255.255.255.255", True)
    frame = arp(1, CLIENT_HW, CLIENT_IP, bytes(6), TARPIT_IP)
    reply = balancer(acls=acls, tarpit_acl=1).handle_frame(frame)
    assert reply[28:32] == ip(TARPIT_IP)


def test_arp_reply_stores_server_hwaddr():
    servers = [RealServer(ip=SERVER_IP), RealServer(ip="192.0.2.11")]
    frame = arp(2, SERVER_HW, SERVER_IP, OUR_HW, OUR_IP, dst=OUR_HW)
    assert balancer(servers).handle_frame(frame) is None
    assert servers[0].hwaddr == SERVER_HW
    assert not servers[1].hw_known


def test_tcp_forward_needs_hwaddr():
    frame = tcp_frame(CLIENT_IP, OUR_IP, 40000, 80)
    with pytest.raises(LookupError):
        balancer().handle_frame(frame)


def test_tcp_forward_without_servers():
    frame = tcp_frame(CLIENT_IP, OUR_IP, 40000, 80)
    with pytest.raises(LookupError):
        balancer([RealServer(ip=SERVER_IP, available=False)]).handle_frame(frame)


def test_tcp_forward():
    frame = tcp_frame(CLIENT_IP, OUR_IP, 40000, 80)
    out = balancer([RealServer(ip=SERVER_IP, hwaddr=SERVER_HW)]).handle_frame(frame)
    assert out[:6] == SERVER_HW
    assert out[6:12] == OUR_HW
    assert out[12:] == frame[12:]


def test_tcp_forward_port_filter():
    servers = [RealServer(ip=SERVER_IP, hwaddr=SERVER_HW)]
    b = DsrBalancer(OUR_IP + ":443", OUR_HW, servers)
    assert b.handle_frame(tcp_frame(CLIENT_IP, OUR_IP, 40000, 80)) is None
    assert b.handle_frame(tcp_frame(CLIENT_IP, OUR_IP, 40000, 443))[:6] == SERVER_HW


def test_tcp_not_for_us():
    servers = [RealServer(ip=SERVER_IP, hwaddr=SERVER_HW)]
    assert balancer(servers).handle_frame(tcp_frame(CLIENT_IP, "192.0.2.50", 1, 80)) is None


def test_udp_forward():
    servers = [RealServer(ip=SERVER_IP, hwaddr=SERVER_HW)]
    frame = tcp_frame(CLIENT_IP, OUR_IP, 5000, 53, proto=17)
    out = balancer(servers, udp=True).handle_frame(frame)
    assert out[:6] == SERVER_HW
    assert balancer(servers).handle_frame(frame) is None


def test_tarpit_syn_gets_syn_ack():
    acls = AclTable()
    acls.add_ipv4(1, TARPIT_IP, "255.255.255.255", True)
    frame = tcp_frame(CLIENT_IP, TARPIT_IP, 40000, 80, seq=1000)
    reply = balancer(acls=acls, tarpit_acl=1).handle_frame(frame)
    assert reply[:6] == CLIENT_HW
    assert reply[6:12] == OUR_HW
    assert reply[26:30] == ip(TARPIT_IP)
    assert reply[30:34] == ip(CLIENT_IP)
    sport, dport, seq, ack, flags, _, cs, urg = struct.unpack_from(">HHIIHHHH", reply, 34)
    assert (sport, dport) == (80, 40000)
    assert seq == 42
    assert ack == 1001
    assert flags == 0x5012
    assert urg == 0
    pseudo = ip(TARPIT_IP) + ip(CLIENT_IP) + struct.pack(">BBH", 0, 6, 40)
    segment = bytearray(reply[34:54])
    assert tcp_checksum(pseudo, bytes(segment)) == 0
    segment[16:18] = b"\0\0"
    assert tcp_checksum(pseudo, bytes(segment)) == cs


def test_tarpit_ignores_non_syn():
    acls = AclTable()
    acls.add_ipv4(1, TARPIT_IP, "255.255.255.255", True)
    frame = tcp_frame(CLIENT_IP, TARPIT_IP, 40000, 80, flags=0x5010)
    assert balancer(acls=acls, tarpit_acl=1).handle_frame(frame) is None


def test_short_frame():
    with pytest.raises(ValueError):
        balancer().handle_frame(b"\x00" * 10)


def test_arp_requests_schedule():
    servers = [RealServer(ip=SERVER_IP), RealServer(ip="192.0.2.11"), RealServer()]
    b = balancer(servers)
    frames = b.arp_requests(100)
    assert [f[38:42] for f in frames] == [ip(SERVER_IP), ip("192.0.2.11")]
    assert b.arp_requests(100) == []
    servers[0].hwaddr = SERVER_HW
    assert [f[38:42] for f in b.arp_requests(130)] == [ip("192.0.2.11")]
    assert len(b.arp_requests(200)) == 2