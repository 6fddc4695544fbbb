"""Plays a chapter, streaming its takes from oldest to newest as one timeline."""

from __future__ import annotations

import array
import enum
import logging
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator

import requests

from storytape.api import CloudClient, CloudError
from storytape.pairing import Pairing
from storytape.prefs import Preferences

log = logging.getLogger(__name__)

GET_RECORDING_PATH = "/functions/v1/get_recording"
REQUEST_TIMEOUT = 20.0

SAMPLE_RATE = 16000
BYTES_PER_SECOND = SAMPLE_RATE * 2
WAV_HEADER_BYTES = 44
READ_BLOCK = 2048

MAX_CLIPS = 64
URL_LEN = 768
MAX_ERROR_LEN = 95

# Silence written after the last block so the output drains without a pop.
SILENCE_BLOCK = bytes(2048)
SILENCE_BLOCKS = 4

VOLUME_NAMESPACE = "ltvol"
VOLUME_KEY = "v"
DEFAULT_VOLUME = 70


class PlaybackState(enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PLAYING = "playing"
    DONE = "done"
    NONE = "none"
    ERROR = "error"


class PlaybackError(Exception):
    """Raised when the chapter list or a clip cannot be fetched."""


@dataclass(frozen=True)
class Clip:
    """One recorded take: where to fetch it and how long it lasts."""

    url: str
    duration_sec: int = 0


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def parse_chapter(payload: Any) -> tuple[list[Clip], int]:
    """Read the clips and total duration from a get_recording reply.

    A chapter with nothing recorded gives ``([], 0)``. When the server
    leaves out the total, it is the sum of the clip durations.
    """
    if not isinstance(payload, dict) or payload.get("found") is not True:
        return [], 0
    total = _as_int(payload.get("total_duration_sec", 0))
    recordings = payload.get("recordings")
    if not isinstance(recordings, list):
        recordings = []
    clips: list[Clip] = []
    for entry in recordings:
        if len(clips) >= MAX_CLIPS:
            break
        if not isinstance(entry, dict):
            continue
        url = entry.get("url")
        if not isinstance(url, str):
            continue
        clips.append(Clip(url[: URL_LEN - 1], _as_int(entry.get("duration_sec", 0))))
    if not clips:
        return [], 0
    if total == 0:
        total = sum(clip.duration_sec for clip in clips)
    return clips, total


def _trunc_div(value: int, divisor: int) -> int:
    quotient = abs(value) // divisor
    return quotient if value >= 0 else -quotient


def to_right_channel(pcm: bytes, volume: int) -> bytes:
    """Turn mono 16-bit PCM into stereo with the left silent, scaled by volume %."""
    if len(pcm) % 2:
        raise ValueError("PCM must hold whole 16-bit samples")
    volume = min(max(int(volume), 0), 100)
    samples = array.array("h", bytes(pcm))
    if sys.byteorder == "big":
        samples.byteswap()
    out = array.array("h", bytes(4 * len(samples)))
    out[1::2] = array.array("h", (_trunc_div(s * volume, 100) for s in samples))
    if sys.byteorder == "big":
        out.byteswap()
    return out.tobytes()


class SampleAligner:
    """Regroups a byte stream into whole 16-bit samples, carrying an odd byte."""

    def __init__(self) -> None:
        self._carry = b""

    def feed(self, data: bytes) -> bytes:
        """Return the complete samples available after adding ``data``."""
        joined = self._carry + bytes(data)
        if len(joined) % 2:
            self._carry = joined[-1:]
            return joined[:-1]
        self._carry = b""
        return joined


class Volume:
    """Playback volume in percent, persisted in settings."""

    def __init__(self, prefs: Preferences) -> None:
        self._prefs = prefs
        self._value: int | None = None

    def get(self) -> int:
        if self._value is None:
            stored = self._prefs.get(VOLUME_NAMESPACE, VOLUME_KEY, DEFAULT_VOLUME)
            try:
                value = int(stored)
            except (TypeError, ValueError):
                value = DEFAULT_VOLUME
            self._value = min(max(value, 0), 100)
        return self._value

    def set(self, value: int) -> None:
        """Set the volume, clamped to 0..100, and persist it."""
        self._value = min(max(int(value), 0), 100)
        self._prefs.put(VOLUME_NAMESPACE, VOLUME_KEY, self._value)

    def step(self, delta: int) -> None:
        self.set(self.get() + delta)


class Player:
    """Fetches a chapter's clip list and streams the clips to ``sink``.

    ``sink`` receives interleaved stereo 16-bit PCM at 16 kHz.
    """

    def __init__(
        self,
        client: CloudClient,
        pairing: Pairing,
        volume: Volume,
        sink: Callable[[bytes], Any],
        session: requests.Session | None = None,
    ) -> None:
        self._client = client
        self._pairing = pairing
        self._volume = volume
        self._sink = sink
        self._session = session if session is not None else requests.Session()
        self._stop = threading.Event()
        self._state = PlaybackState.IDLE
        self._position = 0
        self._duration = 0
        self._error = ""

    def _fail(self, message: str) -> None:
        self._error = message[:MAX_ERROR_LEN]
        log.warning("error: %s", self._error)

    def fetch_chapter(self, chapter: int) -> list[Clip]:
        """Ask for the chapter's clips; empty when nothing is recorded."""
        headers = {
            "Content-Type": "application/json",
            "x-hardware-id": self._pairing.device_id(),
            "x-pair-token": self._pairing.token_hex(),
            "x-chapter": str(chapter),
        }
        try:
            resp = self._client.post(
                GET_RECORDING_PATH, "{}", headers, timeout=REQUEST_TIMEOUT
            )
        except CloudError as exc:
            raise PlaybackError(f"get_recording {exc}") from exc
        if resp.status_code != 200:
            raise PlaybackError(f"get_recording HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            log.warning("JSON parse error: %s | head: %.120s", exc, resp.text)
            raise PlaybackError("bad JSON from get_recording") from exc
        clips, total = parse_chapter(payload)
        self._duration = total
        if clips:
            log.info("chapter has %d clip(s), total %ds", len(clips), total)
        return clips

    def stream_clip(self, clip: Clip) -> Iterator[bytes]:
        """Yield the clip's PCM body, without its WAV header."""
        try:
            resp = self._session.get(clip.url, stream=True, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            raise PlaybackError(f"clip GET failed: {exc}") from exc
        with resp:
            if resp.status_code != 200:
                raise PlaybackError(f"clip GET HTTP {resp.status_code}")
            skip = WAV_HEADER_BYTES
            try:
                for block in resp.iter_content(READ_BLOCK):
                    if self._stop.is_set():
                        return
                    if skip:
                        cut = min(skip, len(block))
                        skip -= cut
                        block = block[cut:]
                    if block:
                        yield block
            except requests.RequestException as exc:
                raise PlaybackError(f"clip read failed: {exc}") from exc

    def play(self, chapter: int) -> PlaybackState:
        """Play the whole chapter and return the state it ended in."""
        if self._state in (PlaybackState.PLAYING, PlaybackState.FETCHING):
            return self._state
        self._stop.clear()
        self._state = PlaybackState.FETCHING
        self._position = 0
        self._duration = 0
        self._error = ""

        try:
            clips = self.fetch_chapter(chapter)
        except PlaybackError as exc:
            self._fail(str(exc))
            self._state = PlaybackState.ERROR
            return self._state
        if not clips:
            self._state = PlaybackState.NONE
            return self._state

        self._state = PlaybackState.PLAYING
        aligner = SampleAligner()
        played = 0
        for number, clip in enumerate(clips, start=1):
            if self._stop.is_set():
                break
            log.info("clip %d/%d", number, len(clips))
            try:
                for block in self.stream_clip(clip):
                    if self._stop.is_set():
                        break
                    pcm = aligner.feed(block)
                    if pcm:
                        self._sink(to_right_channel(pcm, self._volume.get()))
                    played += len(pcm)
                    self._position = played // BYTES_PER_SECOND
            except PlaybackError as exc:
                log.warning("%s (skip)", exc)
                continue

        for _ in range(SILENCE_BLOCKS):
            self._sink(SILENCE_BLOCK)

        self._state = PlaybackState.IDLE if self._stop.is_set() else PlaybackState.DONE
        log.info("chapter finished at %ds", self._position)
        return self._state

    def stop(self) -> None:
        """Ask a running :meth:`play` to wind down; returns at once."""
        self._stop.set()

    def state(self) -> PlaybackState:
        return self._state

    def position_sec(self) -> int:
        return self._position

    def duration_sec(self) -> int:
        return self._duration

    def last_error(self) -> str:
        return self._error