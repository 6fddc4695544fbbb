"""The book being recorded: its name and list of chapters, persisted."""

from __future__ import annotations

from typing import Any

from storytape.prefs import Preferences

NAMESPACE = "ltbook"
MAX_NAME_LEN = 48
MAX_CHAPTERS = 32
MAX_CHAPTER_LEN = 32
DEFAULT_NAME = "My Stories"


class BookFullError(Exception):
    """Raised when a chapter is added to a book that already has the maximum."""


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _default_chapter_name(index: int) -> str:
    return f"Chapter {index + 1}"[:MAX_CHAPTER_LEN]


class Book:
    """Book name plus chapter list, stored in a :class:`Preferences` namespace."""

    def __init__(self, prefs: Preferences) -> None:
        self._prefs = prefs
        self._name = ""
        self._chapters: list[str] = []
        self._active = 0

    def load(self) -> None:
        """Read the stored book; a book with no chapters gets "Chapter 1"."""
        get = self._prefs.get
        self._name = str(get(NAMESPACE, "name", ""))[:MAX_NAME_LEN]

        count = min(max(_as_int(get(NAMESPACE, "nch", 0)), 0), MAX_CHAPTERS)
        self._chapters = [
            str(get(NAMESPACE, f"ch{i}", ""))[:MAX_CHAPTER_LEN] for i in range(count)
        ]

        active = _as_int(get(NAMESPACE, "act", 0))
        self._active = active if 0 <= active < count else 0

        if not self._chapters:
            self._chapters = [_default_chapter_name(0)]
            self._persist_all()

    def name(self) -> str:
        """The book name, or the default when none was set."""
        return self._name or DEFAULT_NAME

    def has_name(self) -> bool:
        return bool(self._name)

    def set_name(self, name: str) -> None:
        """Set and persist the book name, cut to the maximum length."""
        self._name = name[:MAX_NAME_LEN]
        self._prefs.put(NAMESPACE, "name", self._name)

    def chapter_count(self) -> int:
        return len(self._chapters)

    def chapter_name(self, index: int) -> str | None:
        """The chapter's name, or None when ``index`` is out of range."""
        if 0 <= index < len(self._chapters):
            return self._chapters[index]
        return None

    def add_chapter(self) -> int:
        """Append a chapter named "Chapter N" and return its index."""
        if len(self._chapters) >= MAX_CHAPTERS:
            raise BookFullError(f"a book holds at most {MAX_CHAPTERS} chapters")
        index = len(self._chapters)
        self._chapters.append(_default_chapter_name(index))
        self._persist_all()
        return index

    def active_chapter(self) -> int:
        return self._active

    def set_active_chapter(self, index: int) -> None:
        """Make ``index`` the active chapter; out-of-range indexes are ignored."""
        if not 0 <= index < len(self._chapters):
            return
        self._active = index
        self._prefs.put(NAMESPACE, "act", index)

    def _persist_all(self) -> None:
        put = self._prefs.put
        put(NAMESPACE, "name", self._name)
        put(NAMESPACE, "nch", len(self._chapters))
        put(NAMESPACE, "act", self._active)
        for i, chapter in enumerate(self._chapters):
            put(NAMESPACE, f"ch{i}", chapter)