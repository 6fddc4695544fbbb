import pytest

from storytape.pairing import (
    KEY_TOKEN,
    NAMESPACE,
    CredentialsError,
    Pairing,
    WifiCredentials,
    device_id_from_mac,
)
from storytape.prefs import Preferences

MAC = 0xCCBBAA000000
RAW = bytes(range(16))
ACCT = "00000000-0000-0000-0000-000000000000"


def make(prefs, raw=RAW):
    p = Pairing(prefs, MAC, lambda: raw)
    p.begin()
    return p


@pytest.fixture
def prefs():
    return Preferences()


def test_device_id_uses_upper_three_bytes():
    assert device_id_from_mac(MAC) == "LT-AABBCC"


def test_device_id_shape():
    ident = device_id_from_mac(0xFFFFFFFFFFFF)
    assert ident.startswith("LT-") and len(ident) == 9


def test_new_token_comes_from_factory_and_is_stored(prefs):
    p = make(prefs)
    assert p.token_hex() == RAW.hex()
    assert prefs.get(NAMESPACE, KEY_TOKEN) == RAW.hex()


def test_qr_url_carries_device_and_token(prefs):
    p = make(prefs)
    assert p.qr_url() == f"legacytape://pair?d={p.device_id()}&t={p.token_hex()}"


def test_existing_token_is_reused(prefs):
    first = make(prefs)
    second = make(prefs, raw=bytes(16))
    assert second.token_hex() == first.token_hex()


def test_malformed_stored_token_is_replaced(prefs):
    prefs.put(NAMESPACE, KEY_TOKEN, "token")
    p = make(prefs)
    assert p.token_hex() == RAW.hex()


def test_unpaired_device_has_empty_credentials(prefs):
    p = make(prefs)
    assert p.is_complete() is False
    assert p.credentials() == WifiCredentials()


def test_credentials_reload_after_pairing(prefs):
    password = "password"
    p = make(prefs)
    p.store_credentials("HomeNet", password, None, None, ACCT)
    p.mark_complete()
    again = make(prefs)
    creds = again.credentials()
    assert creds == WifiCredentials("HomeNet", password, "", "", ACCT)


def test_credentials_not_loaded_unless_paired(prefs):
    password = "password"
    p = make(prefs)
    p.store_credentials("HomeNet", password, "Backup", password, ACCT)
    assert p.credentials().ssid2 == "Backup"
    again = make(prefs)
    assert again.credentials() == WifiCredentials()


def test_complete_event_is_single_shot(prefs):
    p = make(prefs)
    assert p.consume_complete_event() is False
    p.mark_complete()
    assert p.is_complete() is True
    assert p.consume_complete_event() is True
    assert p.consume_complete_event() is False


@pytest.mark.parametrize(
    "ssid, pw, ssid2, pw2, acct",
    [
        (None, "password", None, None, ACCT),
        ("HomeNet", None, None, None, ACCT),
        ("HomeNet", "password", None, None, None),
        ("s" * 33, "password", None, None, ACCT),
        ("HomeNet", "password" * 8, None, None, ACCT),
        ("HomeNet", "password", "s" * 33, None, ACCT),
        ("HomeNet", "password", None, "password" * 8, ACCT),
        ("HomeNet", "password", None, None, "a" * 64),
        ("", "password", None, None, ACCT),
        ("HomeNet", "password", None, None, ""),
    ],
)
def test_invalid_credentials_rejected(prefs, ssid, pw, ssid2, pw2, acct):
    p = make(prefs)
    with pytest.raises(CredentialsError):
        p.store_credentials(ssid, pw, ssid2, pw2, acct)
    assert p.credentials() == WifiCredentials()


def test_ssid_at_limit_accepted(prefs):
    password = "password"
    p = make(prefs)
    p.store_credentials("s" * 32, password, None, None, ACCT)
    assert p.credentials().ssid == "s" * 32


def test_factory_reset_wipes_token_and_flag(prefs):
    p = make(prefs)
    p.mark_complete()
    p.factory_reset()
    assert p.token_hex() == ""
    assert p.qr_url() == ""
    assert p.is_complete() is False
    assert prefs.get(NAMESPACE, KEY_TOKEN) is None


def test_factory_reset_then_begin_makes_fresh_token(prefs):
    p = make(prefs)
    p.factory_reset()
    fresh = bytes(reversed(RAW))
    again = make(prefs, raw=fresh)
    assert again.token_hex() == fresh.hex()


def test_default_factory_gives_hex_token(prefs):
    p = Pairing(prefs, MAC)
    p.begin()
    assert len(p.token_hex()) == 32
    assert int(p.token_hex(), 16) >= 0