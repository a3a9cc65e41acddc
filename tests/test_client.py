import pytest

from penbalance.client import CLIENTS_MAX, TRACKING_TIME, ClientTable
from penbalance.netconv import AF_INET, AF_INET6, AF_UNIX, SockAddr


def v4(text):
    return SockAddr(AF_INET, text, 1234)


def test_default_table_size_from_source():
    assert len(ClientTable(CLIENTS_MAX)) == 2048


def test_default_tracking_time_never_recycles():
    table = ClientTable(2, tracking_time=TRACKING_TIME)
    table.store(v4("10.0.0.1"), 95)
    table.store(v4("10.0.0.2"), 5)
    index = table.store(v4("10.0.0.3"), 100)
    assert index == 1
    assert table[0].addr == v4("10.0.0.1")
    assert table[0].last == 95


def test_new_client_gets_first_slot():
    table = ClientTable(4)
    index = table.store(v4("10.0.0.1"), 100)
    assert index == 0
    assert table[0].connects == 1
    assert table[0].last == 100
    assert table[0].server is None


def test_known_client_keeps_slot_and_counts():
    table = ClientTable(4)
    first = table.store(v4("10.0.0.1"), 100)
    table.store(v4("10.0.0.2"), 101)
    again = table.store(v4("10.0.0.1"), 102)
    assert again == first
    assert table[first].connects == 2
    assert table[first].last == 102


def test_distinct_clients_get_distinct_slots():
    table = ClientTable(4)
    indexes = [table.store(v4(f"10.0.0.{n}"), 100 + n) for n in range(1, 5)]
    assert sorted(indexes) == list(range(4))


def test_full_table_reuses_oldest_and_resets_stats():
    table = ClientTable(2)
    table.store(v4("10.0.0.1"), 50)
    table.store(v4("10.0.0.2"), 40)
    table[1].server = 3
    table[1].csx = 99
    index = table.store(v4("10.0.0.3"), 60)
    assert index == 1
    assert table[1].connects == 1
    assert table[1].server is None
    assert table[1].csx == 0
    assert table[1].addr == v4("10.0.0.3")


def test_ipv6_forms_are_the_same_client():
    table = ClientTable(3)
    first = table.store(SockAddr(AF_INET6, "2001:db8::1"), 10)
    second = table.store(SockAddr(AF_INET6, "2001:0db8:0:0:0:0:0:1"), 11)
    assert first == second
    assert table[first].connects == 2


def test_families_do_not_mix():
    table = ClientTable(3)
    first = table.store(v4("10.0.0.1"), 10)
    second = table.store(SockAddr(AF_INET6, "::ffff:10.0.0.1"), 11)
    assert first != second


def test_unix_clients_share_a_slot():
    table = ClientTable(3)
    first = table.store(SockAddr(AF_UNIX, "/tmp/a"), 10)
    second = table.store(SockAddr(AF_UNIX, "/tmp/b"), 11)
    assert first == second
    assert table[first].addr.address == "/tmp/b"


def test_empty_table_raises():
    with pytest.raises(IndexError):
        ClientTable().store(v4("10.0.0.1"), 1)


def test_expand_only_grows():
    table = ClientTable(2)
    table.store(v4("10.0.0.1"), 1)
    table.expand(1)
    assert len(table) == 2
    table.expand(5)
    assert len(table) == 5
    assert table[0].addr == v4("10.0.0.1")
    assert all(c.last == 0 for c in list(table)[2:])