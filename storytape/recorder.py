"""Continuous recording into two alternating fixed-size chunk buffers."""

from __future__ import annotations

import array
import enum
import logging
import secrets
import sys
import threading
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

SAMPLE_RATE = 16000
BYTES_PER_SECOND = SAMPLE_RATE * 2
CHUNK_SECONDS = 10
CHUNK_BYTES = BYTES_PER_SECOND * CHUNK_SECONDS
WARMUP_BYTES = BYTES_PER_SECOND // 2
NUM_BUFFERS = 2
LEVEL_REFERENCE = 4096
MAX_ERROR_LEN = 95


class AudioState(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"


class _SlotState(enum.Enum):
    EMPTY = "empty"
    FILLING = "filling"
    READY = "ready"
    UPLOADING = "uploading"


@dataclass
class _Slot:
    data: bytearray = field(default_factory=bytearray)
    idx: int = 0
    state: _SlotState = _SlotState.EMPTY


@dataclass(frozen=True)
class Chunk:
    """A full (or final partial) piece of PCM handed out for upload."""

    data: bytes
    idx: int
    slot: int = field(default=-1, compare=False)


def peak_level(pcm: bytes) -> int:
    """Peak of 16-bit little-endian samples as 0..100 against 1/8 full scale."""
    usable = len(pcm) - len(pcm) % 2
    samples = array.array("h", bytes(pcm[:usable]))
    if sys.byteorder == "big":
        samples.byteswap()
    # A sample of -32768 has no 16-bit magnitude and does not count.
    peak = max((abs(s) for s in samples if s != -32768), default=0)
    return min(peak * 100 // LEVEL_REFERENCE, 100)


def new_session_id() -> str:
    """A fresh 32-character lowercase hex session id."""
    return secrets.token_hex(16)


class Recorder:
    """Splits incoming 16 kHz mono 16-bit PCM into chunks for upload.

    Capture pushes audio in with :meth:`feed`; the uploader pulls finished
    chunks with :meth:`take_chunk` and hands them back with
    :meth:`release_chunk`. While both buffers wait for upload, capture
    stalls and further audio is dropped.
    """

    def __init__(
        self, chunk_bytes: int = CHUNK_BYTES, warmup_bytes: int = WARMUP_BYTES
    ) -> None:
        if chunk_bytes <= 0:
            raise ValueError("chunk_bytes must be positive")
        if warmup_bytes < 0:
            raise ValueError("warmup_bytes must not be negative")
        self._chunk_bytes = chunk_bytes
        self._warmup_bytes = warmup_bytes
        self._lock = threading.RLock()
        self._slots = [_Slot() for _ in range(NUM_BUFFERS)]
        self._active = 0
        self._state = AudioState.IDLE
        self._level = 0
        self._chunks_captured = 0
        self._total_bytes = 0
        self._session_id = ""
        self._last_error = ""
        self._capturing = False
        self._warmup_left = 0

    def start(self) -> None:
        """Begin a new session with a fresh session id."""
        with self._lock:
            if self._state is AudioState.RECORDING:
                raise RuntimeError("already recording")
            for slot in self._slots:
                slot.data = bytearray()
                slot.state = _SlotState.EMPTY
            self._active = 0
            self._chunks_captured = 0
            self._total_bytes = 0
            self._level = 0
            self._last_error = ""
            self._session_id = new_session_id()
            self._warmup_left = self._warmup_bytes
            self._slots[0].state = _SlotState.FILLING
            self._state = AudioState.RECORDING
            self._capturing = True
            log.info("session %s started", self._session_id)

    def feed(self, pcm: bytes) -> int:
        """Capture ``pcm``; returns how many bytes went into a buffer."""
        with self._lock:
            if not self._capturing or self._state not in (
                AudioState.RECORDING,
                AudioState.FINALIZING,
            ):
                return 0
            view = memoryview(bytes(pcm))
            if self._warmup_left and self._state is AudioState.RECORDING:
                skip = min(self._warmup_left, len(view))
                self._warmup_left -= skip
                view = view[skip:]
            stored = 0
            while view:
                slot = self._slots[self._active]
                if slot.state is not _SlotState.FILLING:
                    break
                room = self._chunk_bytes - len(slot.data)
                piece = view[:room]
                view = view[len(piece):]
                slot.data.extend(piece)
                self._level = peak_level(piece)
                self._total_bytes += len(piece)
                stored += len(piece)
                if self._state is AudioState.FINALIZING:
                    self._exit_capture()
                    break
                if len(slot.data) >= self._chunk_bytes:
                    self._mark_ready(slot)
                    self._advance()
            return stored

    def stop(self) -> None:
        """Stop recording; the partial chunk is flushed when capture ends."""
        with self._lock:
            if self._state is not AudioState.RECORDING:
                return
            log.info("stop, entering finalizing")
            self._state = AudioState.FINALIZING

    def finish_capture(self) -> None:
        """End capture, queueing the partial chunk unless the session failed."""
        with self._lock:
            if not self._capturing:
                return
            if self._state is AudioState.FINALIZING:
                self._exit_capture()
            else:
                self._capturing = False

    def state(self) -> AudioState:
        return self._state

    def seconds(self) -> int:
        """Whole seconds of audio captured this session."""
        return self._total_bytes // BYTES_PER_SECOND

    def level(self) -> int:
        """Latest input level, 0..100."""
        return self._level

    def session_id(self) -> str:
        return self._session_id

    def chunks_captured(self) -> int:
        return self._chunks_captured

    def last_error(self) -> str:
        return self._last_error

    def capture_active(self) -> bool:
        """True while capture may still flush a chunk."""
        return self._capturing

    def force_stop_for_network(self, reason: str | None) -> None:
        """Abort a recording after the network is lost; drops the partial chunk."""
        with self._lock:
            if self._state is not AudioState.RECORDING:
                return
            self._last_error = (reason or "network failure")[:MAX_ERROR_LEN]
            log.warning("force stop: %s", self._last_error)
            self._state = AudioState.ERROR
            self._capturing = False

    def mark_complete(self) -> None:
        """Move from finalizing to complete once the upload is finished."""
        with self._lock:
            if self._state is AudioState.FINALIZING:
                self._state = AudioState.COMPLETE
                log.info("recording fully uploaded and finalized")

    def take_chunk(self) -> Chunk | None:
        """The oldest ready chunk, or None when none is waiting."""
        with self._lock:
            ready = [
                (slot.idx, number)
                for number, slot in enumerate(self._slots)
                if slot.state is _SlotState.READY
            ]
            if not ready:
                return None
            idx, number = min(ready)
            slot = self._slots[number]
            slot.state = _SlotState.UPLOADING
            return Chunk(bytes(slot.data), idx, number)

    def release_chunk(self, chunk: Chunk) -> None:
        """Return a taken chunk's buffer so capture can reuse it."""
        with self._lock:
            if not 0 <= chunk.slot < NUM_BUFFERS:
                return
            slot = self._slots[chunk.slot]
            slot.data = bytearray()
            slot.state = _SlotState.EMPTY
            stalled = self._slots[self._active].state is not _SlotState.FILLING
            if stalled and self._capturing and self._state is AudioState.RECORDING:
                self._active = chunk.slot
                slot.state = _SlotState.FILLING

    def _mark_ready(self, slot: _Slot) -> None:
        slot.idx = self._chunks_captured
        self._chunks_captured += 1
        slot.state = _SlotState.READY
        log.info("chunk %d ready (%d bytes)", slot.idx, len(slot.data))

    def _advance(self) -> None:
        for step in range(1, NUM_BUFFERS + 1):
            probe = (self._active + step) % NUM_BUFFERS
            if self._slots[probe].state is _SlotState.EMPTY:
                self._active = probe
                self._slots[probe].data = bytearray()
                self._slots[probe].state = _SlotState.FILLING
                return
        log.warning("all buffers in flight, capture stalling")

    def _exit_capture(self) -> None:
        slot = self._slots[self._active]
        if slot.state is _SlotState.FILLING:
            if slot.data:
                self._mark_ready(slot)
            else:
                slot.state = _SlotState.EMPTY
        self._capturing = False