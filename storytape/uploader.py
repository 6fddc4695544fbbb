"""Uploads recorded chunks to the backend and finalizes finished sessions."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from storytape.api import CloudClient, CloudError
from storytape.book import Book
from storytape.pairing import Pairing
from storytape.recorder import AudioState, Chunk, Recorder

log = logging.getLogger(__name__)

UPLOAD_CHUNK_PATH = "/functions/v1/upload_chunk"
FINALIZE_PATH = "/functions/v1/finalize_recording"
REQUEST_TIMEOUT = 30.0
RECONNECT_TIMEOUT = 6.0

# After this many consecutive failures while recording, capture is aborted.
UPLOAD_FAILURE_LIMIT = 15

WIFI_RETRY_DELAY = 0.5
UPLOAD_RETRY_DELAY = 2.0
FINALIZE_RETRY_DELAY = 3.0
CAPTURE_WAIT_DELAY = 0.05
IDLE_DELAY = 0.2

MAX_ERROR_LEN = 95
NOTHING_UPLOADED = "Nothing uploaded - check connection"


class Wifi(Protocol):
    """The network link the uploader depends on."""

    def is_connected(self) -> bool: ...

    def connect(self, ssid: str, password: str, timeout: float) -> bool: ...


class UploadError(Exception):
    """Raised when a chunk upload or the finalize request fails."""


class Uploader:
    """Moves chunks from the recorder to the backend, then finalizes the session.

    :meth:`step` performs one pass of the work and returns how long to wait
    before the next; :meth:`run` repeats it until told to stop.
    """

    def __init__(
        self,
        client: CloudClient,
        recorder: Recorder,
        pairing: Pairing,
        book: Book,
        wifi: Wifi,
    ) -> None:
        self._client = client
        self._recorder = recorder
        self._pairing = pairing
        self._book = book
        self._wifi = wifi
        self._lock = threading.Lock()
        self._uploaded = 0
        self._error = ""
        self._finalize_pending = False
        self._final_duration = 0
        self._final_chapter = 0
        self._failures = 0

    def _set_error(self, message: str) -> None:
        with self._lock:
            self._error = message[:MAX_ERROR_LEN]
        log.warning("error: %s", message)

    def _device_headers(self) -> dict[str, str]:
        return {
            "x-hardware-id": self._pairing.device_id(),
            "x-pair-token": self._pairing.token_hex(),
            "x-session-id": self._recorder.session_id(),
        }

    def upload_chunk(self, chunk: Chunk) -> None:
        """POST one chunk of PCM. Raises :class:`UploadError` on failure."""
        headers = self._device_headers()
        headers["Content-Type"] = "application/octet-stream"
        headers["x-chunk-idx"] = str(chunk.idx)
        try:
            resp = self._client.post(
                UPLOAD_CHUNK_PATH, chunk.data, headers, timeout=REQUEST_TIMEOUT
            )
        except CloudError as exc:
            cause = exc.__cause__ if exc.__cause__ is not None else exc
            message = f"Network error: {cause}"
            self._set_error(message)
            raise UploadError(message) from exc
        code = resp.status_code
        if 200 <= code < 300:
            log.info("chunk %d OK (%d bytes)", chunk.idx, len(chunk.data))
            return
        if code == 404:
            message = "Cloud upload not enabled yet (server 404)"
        else:
            message = f"Upload rejected (HTTP {code})"
        self._set_error(message)
        raise UploadError(message)

    def finalize(self, duration: int, chapter: int) -> None:
        """Ask the backend to assemble the session. Raises :class:`UploadError`."""
        headers = self._device_headers()
        chapter_name = self._book.chapter_name(chapter)
        headers.update(
            {
                "Content-Type": "application/json",
                "x-acct": self._pairing.credentials().acct,
                "x-duration": str(duration),
                "x-chapter": str(chapter),
                "x-book-name": self._book.name(),
                "x-chapter-name": chapter_name if chapter_name else "Chapter",
            }
        )
        try:
            resp = self._client.post(
                FINALIZE_PATH, "{}", headers, timeout=REQUEST_TIMEOUT
            )
        except CloudError as exc:
            message = f"finalize network error: {exc}"
            self._set_error(message)
            raise UploadError(message) from exc
        if not 200 <= resp.status_code < 300:
            message = f"finalize HTTP {resp.status_code}"
            self._set_error(message)
            raise UploadError(message)
        log.info("finalize OK: %s", resp.text)

    def request_finalize(self, duration_sec: int, chapter_idx: int) -> None:
        """Queue the finalize call for when the last chunk has gone up."""
        with self._lock:
            self._final_duration = duration_sec
            self._final_chapter = chapter_idx
            self._finalize_pending = True
        log.info("finalize queued: %ds, chapter %d", duration_sec, chapter_idx)

    def reset(self) -> None:
        """Clear the per-recording counters before a new take."""
        with self._lock:
            self._uploaded = 0
            self._error = ""
            self._finalize_pending = False

    def chunks_uploaded(self) -> int:
        return self._uploaded

    def last_error(self) -> str:
        return self._error

    def _note_failure(self, reason: str) -> None:
        self._failures += 1
        if (
            self._recorder.state() is AudioState.RECORDING
            and self._failures >= UPLOAD_FAILURE_LIMIT
        ):
            self._recorder.force_stop_for_network(reason)
            self._failures = 0

    def _reconnect(self) -> bool:
        creds = self._pairing.credentials()
        if creds.ssid:
            log.info("network down, reconnecting to %r", creds.ssid)
            if self._wifi.connect(creds.ssid, creds.pw, RECONNECT_TIMEOUT):
                return True
            if creds.ssid2 and self._wifi.connect(
                creds.ssid2, creds.pw2, RECONNECT_TIMEOUT
            ):
                return True
        return self._wifi.is_connected()

    def step(self) -> float:
        """Do one pass of upload work; return the seconds to wait before the next."""
        if not self._wifi.is_connected():
            if self._reconnect():
                self._failures = 0
                return 0.0
            self._note_failure("WiFi disconnected")
            return WIFI_RETRY_DELAY

        chunk = self._recorder.take_chunk()
        if chunk is not None:
            try:
                self.upload_chunk(chunk)
            except UploadError:
                self._recorder.release_chunk(chunk)
                self._note_failure("upload failures exceeded threshold")
                return UPLOAD_RETRY_DELAY
            with self._lock:
                self._uploaded += 1
            self._failures = 0
            self._recorder.release_chunk(chunk)
            return 0.0

        state = self._recorder.state()
        if self._finalize_pending and state is AudioState.FINALIZING:
            # The last partial chunk is only flushed once capture ends.
            if self._recorder.capture_active():
                return CAPTURE_WAIT_DELAY
            if self._uploaded == 0:
                log.warning("failed: 0 chunks uploaded")
                if not self._error:
                    self._set_error(NOTHING_UPLOADED)
                self._finalize_pending = False
                self._recorder.mark_complete()
                return 0.0
            try:
                self.finalize(self._final_duration, self._final_chapter)
            except UploadError:
                return FINALIZE_RETRY_DELAY
            self._finalize_pending = False
            self._recorder.mark_complete()
            return 0.0

        if state is AudioState.ERROR:
            self._finalize_pending = False
        return IDLE_DELAY

    def run(self, stop_event: threading.Event) -> None:
        """Call :meth:`step` repeatedly until ``stop_event`` is set."""
        log.info("upload loop started")
        while not stop_event.is_set():
            delay = self.step()
            if delay > 0:
                stop_event.wait(delay)
        log.info("upload loop exiting")