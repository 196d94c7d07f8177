import pytest

from payportal.service.client_ip import is_loopback, normalize_ip, resolve_client_ip, same_client


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("10.0.0.1", "10.0.0.1"),
        (" 10.0.0.1 ", "10.0.0.1"),
        ("::ffff:10.0.0.1", "10.0.0.1"),
        ("[::1]", "::1"),
        ("fe80::1%eth0", "fe80::1"),
        ("2001:DB8:0:0:0:0:0:1", "2001:db8::1"),
        ("TestClient", "testclient"),
        (None, ""),
    ],
)
def test_normalize_ip(raw, expected):
    assert normalize_ip(raw) == expected


def test_is_loopback():
    assert is_loopback("127.0.0.1")
    assert is_loopback("::1")
    assert is_loopback("::ffff:127.0.0.1")
    assert not is_loopback("10.0.0.1")
    assert not is_loopback("testclient")


class TestSameClient:
    def test_identical(self):
        assert same_client("10.0.0.1", "10.0.0.1")

    def test_different(self):
        assert not same_client("10.0.0.1", "10.0.0.2")

    def test_loopback_only_when_both_sides_loopback(self):
        assert same_client("127.0.0.1", "::1")
        assert not same_client("127.0.0.1", "10.0.0.1")
        assert not same_client("10.0.0.1", "::1")

    def test_loopback_equivalence_toggle(self):
        assert not same_client("127.0.0.1", "::1", allow_loopback_equivalence=False)
        assert same_client("127.0.0.1", "::ffff:127.0.0.1", allow_loopback_equivalence=False)


class TestResolveClientIp:
    def test_peer_used_without_trusted_proxies(self):
        assert resolve_client_ip("10.0.0.5", "1.2.3.4") == "10.0.0.5"

    def test_forwarded_for_ignored_from_untrusted_peer(self):
        assert resolve_client_ip("10.0.0.5", "1.2.3.4", ["10.0.0.9"]) == "10.0.0.5"

    def test_forwarded_for_from_trusted_peer(self):
        assert resolve_client_ip("10.0.0.9", "1.2.3.4", ["10.0.0.9"]) == "1.2.3.4"

    def test_rightmost_untrusted_hop_wins(self):
        # Left-most entries are client supplied and can be spoofed
        header = "6.6.6.6, 1.2.3.4, 10.0.0.8"
        assert resolve_client_ip("10.0.0.9", header, ["10.0.0.9", "10.0.0.8"]) == "1.2.3.4"

    def test_all_hops_trusted_falls_back_to_peer(self):
        assert resolve_client_ip("10.0.0.9", "10.0.0.8", ["10.0.0.9", "10.0.0.8"]) == "10.0.0.9"

    def test_missing_header_uses_peer(self):
        assert resolve_client_ip("::ffff:10.0.0.9", None, ["10.0.0.9"]) == "10.0.0.9"
