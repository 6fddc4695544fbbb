"""Text and meter values shown while recording and after it stops."""

from __future__ import annotations

from storytape.recorder import AudioState

PROGRESS_FULL = 100
VU_TRACK_WIDTH = 612

VU_GREEN = 0x4AC06A
VU_AMBER = 0xE5B03A
VU_RED = 0xE53935


def format_clock(seconds: int) -> str:
    """Format a duration as HH:MM:SS."""
    seconds = max(int(seconds), 0)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def chapter_label(index: int) -> str:
    """The banner heading for a zero-based chapter index."""
    return f"CHAPTER {index + 1:02d}"


def upload_status(
    state: AudioState, uploaded: int, total: int, error: str
) -> tuple[str, int | None]:
    """The status line and upload progress (0..100, None to leave unchanged)."""
    if state is AudioState.FINALIZING:
        if total > 0:
            pct = min(uploaded * 100 // total, PROGRESS_FULL)
            return f"Uploading last chunks… {uploaded} / {total} ({pct}%)", pct
        return "Finalizing…", None
    if state is AudioState.COMPLETE:
        if error:
            return f"Not uploaded: {error[:60]}", 0
        return "Uploaded — transcribing on server", PROGRESS_FULL
    if error:
        return f"Issue: {error[:70]}", None
    return "Recording saved", None


class VuMeter:
    """A level bar that rises at once and falls back slowly."""

    def __init__(self, track_width: int = VU_TRACK_WIDTH) -> None:
        if track_width <= 0:
            raise ValueError("track_width must be positive")
        self.track_width = track_width
        self.level = 0

    @property
    def width(self) -> int:
        """Bar width in pixels for the displayed level."""
        return self.level * self.track_width // 100

    @property
    def color(self) -> int:
        """Bar colour: green, amber when loud, red when hot."""
        if self.level < 70:
            return VU_GREEN
        if self.level < 90:
            return VU_AMBER
        return VU_RED

    def update(self, level: int) -> int:
        """Take a new input level (0..100) and return the displayed level."""
        if level > self.level:
            self.level = level
        else:
            # Release by a third of the gap, truncating toward zero.
            self.level -= (self.level - level) // 3
        self.level = min(max(self.level, 0), 100)
        return self.level