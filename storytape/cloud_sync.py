"""Polls the backend until the device's onboarding is marked complete."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from storytape.api import CloudClient, CloudError
from storytape.pairing import Pairing

log = logging.getLogger(__name__)

POLL_INTERVAL = 5.0
DEVICE_STATUS_PATH = "/rest/v1/rpc/device_status"


def parse_onboarding_complete(payload: Any) -> bool:
    """Read the ``onboarding_complete`` flag from a device_status reply.

    The reply is either an array of rows (the first row counts) or a
    single object. Anything other than a boolean True counts as False.
    """
    if isinstance(payload, list):
        if not payload:
            return False
        payload = payload[0]
    if not isinstance(payload, dict):
        return False
    return payload.get("onboarding_complete") is True


class CloudSync:
    """Every five seconds, asks the backend whether onboarding is done."""

    def __init__(
        self,
        client: CloudClient,
        pairing: Pairing,
        wifi_connected: Callable[[], bool],
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._client = client
        self._pairing = pairing
        self._wifi_connected = wifi_connected
        self._clock = clock or time.monotonic
        self._active = False
        self._last_poll: float | None = None
        self._poll_count = 0

    def begin(self) -> None:
        """Start polling; the first tick polls straight away."""
        self._active = True
        self._last_poll = None
        self._poll_count = 0
        log.info("polling started, waiting for onboarding_complete")

    def stop(self) -> None:
        if self._active:
            log.info("polling stopped")
        self._active = False

    def active(self) -> bool:
        return self._active

    def tick(self) -> bool:
        """Poll if active and the interval has passed. True when a poll ran."""
        if not self._active:
            return False
        now = self._clock()
        if self._last_poll is not None and now - self._last_poll < POLL_INTERVAL:
            return False
        self._last_poll = now
        self.poll()
        return True

    def poll(self) -> bool:
        """Ask once. True when onboarding is complete (and pairing was marked)."""
        if not self._wifi_connected():
            log.info("network not connected, skipping poll")
            return False

        body = {
            "hw_id": self._pairing.device_id(),
            "tok": self._pairing.token_hex(),
        }
        self._poll_count += 1
        count = self._poll_count
        try:
            resp = self._client.post(DEVICE_STATUS_PATH, body)
        except CloudError as exc:
            log.warning("poll #%d: %s", count, exc)
            return False

        if resp.status_code == 404:
            log.warning("poll #%d: 404, device_status not deployed yet", count)
            return False
        if resp.status_code != 200:
            log.warning("poll #%d: HTTP %d", count, resp.status_code)
            return False

        try:
            payload = resp.json()
        except ValueError as exc:
            log.warning("poll #%d: JSON parse error: %s", count, exc)
            return False

        if parse_onboarding_complete(payload):
            log.info("onboarding_complete=true, advancing")
            self._pairing.mark_complete()
            self._active = False
            return True
        if count % 6 == 1:
            log.info("poll #%d: onboarding not yet complete", count)
        return False