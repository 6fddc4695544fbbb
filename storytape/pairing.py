"""Device identity, pairing token, QR link and stored network credentials."""

from __future__ import annotations

import enum
import secrets
import threading
from dataclasses import dataclass
from typing import Callable

from storytape.prefs import Preferences

NAMESPACE = "legacytape"
KEY_TOKEN = "tok"
KEY_PAIRED = "paired"
KEY_SSID = "ssid"
KEY_PW = "pw"
KEY_SSID2 = "ssid2"
KEY_PW2 = "pw2"
KEY_ACCT = "acct"

TOKEN_BYTES = 16
TOKEN_HEX_LEN = TOKEN_BYTES * 2
QR_PREFIX = "legacytape://pair"

MAX_SSID_LEN = 32
MAX_PW_LEN = 63
MAX_ACCT_LEN = 63

BLE_SERVICE_UUID = "1ec0de7a-7e2d-4f4f-9c1d-1ec0de7a0001"
BLE_PAIR_CHAR_UUID = "1ec0de7a-7e2d-4f4f-9c1d-1ec0de7a0002"
BLE_STATUS_UUID = "1ec0de7a-7e2d-4f4f-9c1d-1ec0de7a0003"
BLE_WIFILIST_UUID = "1ec0de7a-7e2d-4f4f-9c1d-1ec0de7a0004"


class BleStatus(enum.IntEnum):
    """Status bytes notified to the companion app during pairing."""

    IDLE = 0x00
    VALIDATING = 0x01
    WIFI_CONNECTING = 0x02
    PAIRED = 0x03
    ERR_TOKEN = 0xE1
    ERR_JSON = 0xE2
    ERR_WIFI = 0xE3
    ERR_INTERNAL = 0xE4


class CredentialsError(ValueError):
    """Raised when network or account credentials are missing or too long."""


@dataclass(frozen=True)
class WifiCredentials:
    ssid: str = ""
    pw: str = ""
    ssid2: str = ""
    pw2: str = ""
    acct: str = ""


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _clip(text: str, limit: int) -> str:
    return text.encode("utf-8")[:limit].decode("utf-8", "ignore")


def device_id_from_mac(mac: int) -> str:
    """Build "LT-XXXXXX" from the last three bytes of a byte-reversed 48-bit MAC."""
    parts = ((mac >> shift) & 0xFF for shift in (24, 32, 40))
    return "LT-" + "".join(f"{b:02X}" for b in parts)


def _random_token() -> bytes:
    return secrets.token_bytes(TOKEN_BYTES)


class Pairing:
    """Per-device pairing state kept in a :class:`Preferences` namespace."""

    def __init__(
        self,
        prefs: Preferences,
        mac: int,
        token_factory: Callable[[], bytes] | None = None,
    ) -> None:
        self._prefs = prefs
        self._mac = mac
        self._token_factory = token_factory or _random_token
        self._device_id = device_id_from_mac(mac)
        self._token_hex = ""
        self._qr_url = ""
        self._credentials = WifiCredentials()
        self._event_lock = threading.Lock()
        self._complete_event = False

    def begin(self) -> None:
        """Load or create the token, build the QR link, load stored credentials."""
        self._device_id = device_id_from_mac(self._mac)

        stored = self._prefs.get(NAMESPACE, KEY_TOKEN, "")
        if isinstance(stored, str) and len(stored) == TOKEN_HEX_LEN:
            self._token_hex = stored
        else:
            self._token_hex = bytes(self._token_factory()).hex()
            self._prefs.put(NAMESPACE, KEY_TOKEN, self._token_hex)

        self._qr_url = f"{QR_PREFIX}?d={self._device_id}&t={self._token_hex}"

        if self._prefs.get(NAMESPACE, KEY_PAIRED, False):
            get = self._prefs.get
            self._credentials = WifiCredentials(
                ssid=_clip(str(get(NAMESPACE, KEY_SSID, "")), MAX_SSID_LEN),
                pw=_clip(str(get(NAMESPACE, KEY_PW, "")), MAX_PW_LEN),
                ssid2=_clip(str(get(NAMESPACE, KEY_SSID2, "")), MAX_SSID_LEN),
                pw2=_clip(str(get(NAMESPACE, KEY_PW2, "")), MAX_PW_LEN),
                acct=_clip(str(get(NAMESPACE, KEY_ACCT, "")), MAX_ACCT_LEN),
            )

    def device_id(self) -> str:
        return self._device_id

    def token_hex(self) -> str:
        return self._token_hex

    def qr_url(self) -> str:
        return self._qr_url

    def credentials(self) -> WifiCredentials:
        return self._credentials

    def is_complete(self) -> bool:
        """True once pairing has been marked complete in storage."""
        return bool(self._prefs.get(NAMESPACE, KEY_PAIRED, False))

    def mark_complete(self) -> None:
        """Persist the paired flag and raise the one-shot completion event."""
        self._prefs.put(NAMESPACE, KEY_PAIRED, True)
        with self._event_lock:
            self._complete_event = True

    def consume_complete_event(self) -> bool:
        """Return True once after :meth:`mark_complete`, then False."""
        with self._event_lock:
            fired = self._complete_event
            self._complete_event = False
            return fired

    def store_credentials(
        self,
        ssid: str | None,
        pw: str | None,
        ssid2: str | None,
        pw2: str | None,
        acct: str | None,
    ) -> None:
        """Validate and persist network and account credentials.

        ``ssid2`` and ``pw2`` are optional; None counts as empty.
        """
        if ssid is None or pw is None or acct is None:
            raise CredentialsError("ssid, pw and acct are required")
        ssid2 = ssid2 or ""
        pw2 = pw2 or ""
        limits = (
            ("ssid", ssid, MAX_SSID_LEN),
            ("pw", pw, MAX_PW_LEN),
            ("acct", acct, MAX_ACCT_LEN),
            ("ssid2", ssid2, MAX_SSID_LEN),
            ("pw2", pw2, MAX_PW_LEN),
        )
        for field, value, limit in limits:
            if _byte_len(value) > limit:
                raise CredentialsError(f"{field} is longer than {limit} bytes")
        for field, value in (("ssid", ssid), ("pw", pw), ("acct", acct)):
            if not value:
                raise CredentialsError(f"{field} must not be empty")

        self._credentials = WifiCredentials(ssid, pw, ssid2, pw2, acct)
        put = self._prefs.put
        put(NAMESPACE, KEY_SSID, ssid)
        put(NAMESPACE, KEY_PW, pw)
        put(NAMESPACE, KEY_SSID2, ssid2)
        put(NAMESPACE, KEY_PW2, pw2)
        put(NAMESPACE, KEY_ACCT, acct)

    def factory_reset(self) -> None:
        """Wipe the stored token, paired flag and credentials."""
        self._prefs.clear(NAMESPACE)
        self._token_hex = ""
        self._qr_url = ""