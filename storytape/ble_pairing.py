"""Bluetooth pairing service: receives credentials and serves a network list."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Protocol

from storytape.pairing import (
    BLE_STATUS_UUID,
    BLE_WIFILIST_UUID,
    BleStatus,
    CredentialsError,
    Pairing,
)

log = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 480
WIFI_JSON_MAX = 480
MAX_SCAN_RESULTS = 40
CONNECT_TIMEOUT = 20.0
BUSY_MAX_SECONDS = 90.0


@dataclass(frozen=True)
class Network:
    """A visible wireless network."""

    ssid: str
    rssi: int


class WifiRadio(Protocol):
    """The radio the pairing service scans with and joins networks through."""

    def scan(self) -> Iterable[Network]: ...

    def connect(self, ssid: str, password: str, timeout: float) -> bool: ...


def _dump(entries: list[dict[str, Any]]) -> bytes:
    return json.dumps(entries, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def build_wifi_list(networks: Iterable[Network]) -> bytes:
    """Encode networks as a compact JSON array, strongest signal first.

    At most the first 40 scan results are considered, blank names are
    skipped, and entries stop being added once the JSON would pass 480 bytes.
    """
    considered = list(networks)[:MAX_SCAN_RESULTS]
    ordered = sorted(considered, key=lambda net: net.rssi, reverse=True)
    entries: list[dict[str, Any]] = []
    for net in ordered:
        if not net.ssid:
            continue
        entries.append({"ssid": net.ssid, "rssi": net.rssi})
        if len(_dump(entries)) > WIFI_JSON_MAX:
            entries.pop()
            break
    return _dump(entries)


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


class PairingService:
    """Handles the companion app's connection, reads and credential writes.

    ``notify(uuid, value)`` pushes a characteristic value to the app and
    ``on_paired()`` runs once the device has joined a network. Unless the
    device is already paired, the service starts by scanning for networks.
    """

    def __init__(
        self,
        pairing: Pairing,
        wifi: WifiRadio,
        notify: Callable[[str, bytes], Any],
        on_paired: Callable[[], Any] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._pairing = pairing
        self._wifi = wifi
        self._notify = notify
        self._on_paired = on_paired
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._connected = False
        self._busy = False
        self._busy_since: float | None = None
        self._scan_requested = False
        self._published = False
        self._creds_received = False
        self._cached_list = b"[]"
        self._status = BleStatus.IDLE
        self._running = False
        self.advertising = False

        if pairing.is_complete():
            log.info("already paired, pairing service not started")
            return
        log.info("boot-time network scan")
        self._scan_and_cache()
        self._running = True
        self.advertising = True

    @property
    def running(self) -> bool:
        return self._running

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def status(self) -> BleStatus:
        """The last status value sent to the app."""
        return self._status

    def _notify_status(self, status: BleStatus) -> None:
        self._status = status
        self._notify(BLE_STATUS_UUID, bytes([int(status)]))
        log.info("status notify: 0x%02X", int(status))

    def _request_scan(self) -> None:
        self._scan_requested = True
        self._published = False

    def _scan_and_cache(self) -> int:
        networks = list(self._wifi.scan())
        log.info("scan found %d network(s)", len(networks))
        if not networks:
            return 0
        self._cached_list = build_wifi_list(networks)
        return len(networks)

    def _publish(self) -> None:
        self._notify(BLE_WIFILIST_UUID, self._cached_list)
        self._published = True

    def _try_connect(self, ssid: str, password: str) -> bool:
        if not ssid:
            return False
        log.info("connecting to %r", ssid)
        ok = bool(self._wifi.connect(ssid, password, CONNECT_TIMEOUT))
        if not ok:
            log.warning("connect to %r failed", ssid)
        return ok

    def handle_write(self, raw: bytes | str) -> BleStatus:
        """Process a credentials payload; return the final status sent."""
        data = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
        if not data or len(data) > MAX_PAYLOAD_BYTES:
            self._notify_status(BleStatus.ERR_JSON)
            return self._status

        self._notify_status(BleStatus.VALIDATING)
        try:
            doc = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            log.warning("JSON parse failed: %s", exc)
            self._notify_status(BleStatus.ERR_JSON)
            return self._status
        if not isinstance(doc, dict):
            doc = {}

        token = _text(doc.get("token"))
        ssid = _text(doc.get("ssid"))
        acct = _text(doc.get("acct"))
        pw = _text(doc.get("pw")) or ""
        ssid2 = _text(doc.get("ssid2")) or ""
        pw2 = _text(doc.get("pw2")) or ""

        if token is None or ssid is None or acct is None:
            log.warning("payload missing a required field")
            self._notify_status(BleStatus.ERR_JSON)
            return self._status

        if token != self._pairing.token_hex():
            log.warning("token mismatch")
            self._notify_status(BleStatus.ERR_TOKEN)
            return self._status

        try:
            self._pairing.store_credentials(ssid, pw, ssid2, pw2, acct)
        except CredentialsError as exc:
            log.warning("cannot store credentials: %s", exc)
            self._notify_status(BleStatus.ERR_INTERNAL)
            return self._status

        # From here on a scan would drop the link about to be made.
        with self._lock:
            self._creds_received = True
            self._scan_requested = False

        self._notify_status(BleStatus.WIFI_CONNECTING)
        connected = self._try_connect(ssid, pw)
        if not connected and ssid2:
            log.info("primary failed, trying secondary %r", ssid2)
            connected = self._try_connect(ssid2, pw2)
        if not connected:
            self._notify_status(BleStatus.ERR_WIFI)
            return self._status

        self._notify_status(BleStatus.PAIRED)
        if self._on_paired is not None:
            self._on_paired()
        return self._status

    def handle_read(self) -> bytes:
        """Return the network list; asks for a fresh scan if none was published."""
        with self._lock:
            if not self._published and not self._creds_received:
                self._request_scan()
            return self._cached_list

    def on_connect(self) -> None:
        with self._lock:
            self._connected = True
            self._busy = True
            self._busy_since = self._clock()
            self.advertising = False
            if not self._creds_received:
                self._request_scan()
        log.info("client connected")

    def on_disconnect(self) -> None:
        with self._lock:
            self._connected = False
            self._busy = False
        log.info("client disconnected")
        if self._running and not self._pairing.is_complete():
            self.advertising = True

    def loop(self) -> bool:
        """Run a requested scan and publish the list. True when a scan ran."""
        with self._lock:
            if not self._running or self._creds_received or not self._scan_requested:
                return False
            self._scan_requested = False
        self._publish()
        if self._scan_and_cache() > 0:
            self._publish()
        return True

    def is_busy(self) -> bool:
        """True while a client session is in progress, for at most 90 seconds."""
        with self._lock:
            if (
                self._busy
                and self._busy_since is not None
                and self._clock() - self._busy_since > BUSY_MAX_SECONDS
            ):
                log.warning("busy watchdog tripped, clearing")
                self._busy = False
            return self._busy

    def stop(self) -> None:
        """Tear the service down; clears the busy flag first."""
        log.info("stopping pairing service")
        with self._lock:
            self._busy = False
            self._connected = False
            self._running = False
            self.advertising = False

    def wifi_list(self) -> bytes:
        """The cached network list as JSON."""
        return self._cached_list