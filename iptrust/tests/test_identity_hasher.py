import hashlib

from iptrust.security.ip_utils import IdentityHasher, hash_ip, normalize_ip, short_label


def test_hash_is_salted_sha256_of_trimmed_ip():
    hasher = IdentityHasher("pepper")
    expected = hashlib.sha256(b"pepper:198.51.100.4").hexdigest()
    assert hasher.hash("  198.51.100.4 ") == expected
    assert len(expected) == 64


def test_hash_is_deterministic_across_instances():
    assert IdentityHasher("s").hash("10.0.0.1") == IdentityHasher("s").hash("10.0.0.1")


def test_different_ips_and_salts_give_different_hashes():
    h = IdentityHasher("s")
    assert h.hash("10.0.0.1") != h.hash("10.0.0.2")
    assert IdentityHasher("a").hash("10.0.0.1") != IdentityHasher("b").hash("10.0.0.1")


def test_unusable_input_yields_no_identity():
    h = IdentityHasher("s")
    assert h.hash("") is None
    assert h.hash("   ") is None
    assert h.hash(None) is None
    assert h.hash(1234) is None
    assert normalize_ip(["10.0.0.1"]) == ""


def test_hash_ip_uses_given_salt():
    assert hash_ip("10.0.0.1", salt="x") == IdentityHasher("x").hash("10.0.0.1")


def test_short_label():
    digest = "abcdef0123456789"
    assert short_label(digest) == "ABCDEF0123"
    assert short_label(digest, 6) == "ABCDEF"
    # too short or not an int falls back to the default length
    assert short_label(digest, 3) == "ABCDEF0123"
    assert short_label(digest, "7") == "ABCDEF0123"
    assert short_label(None) is None
