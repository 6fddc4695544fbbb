"""Screen flow and the chapter picker for the device's touch interface."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from storytape.book import Book, BookFullError
from storytape.status import chapter_label

log = logging.getLogger(__name__)

FALLBACK_CHAPTER_NAME = "Chapter 1"


class Screen(enum.IntEnum):
    """The screens of the interface, numbered as the device numbers them."""

    PAIRING = 1
    SET_UP = 2
    NAME_BOOK = 3
    READY = 4
    RECORDING = 5
    STOPPED = 6
    PLAYBACK = 7
    BOOK = 8
    SCREEN_9 = 9
    CHAPTER_PICKER = 10
    VOLUME = 11
    OFFLINE = 12
    NEW_CHAPTER = 13
    SETTINGS = 14


@dataclass(frozen=True)
class ChapterRow:
    """One row of the chapter picker."""

    index: int
    number: str
    name: str
    active: bool


class Navigator:
    """Tracks the screen on display and carries out the picker's actions.

    The interface starts on the pairing screen.
    """

    def __init__(self, book: Book) -> None:
        self._book = book
        self._current = Screen.PAIRING

    def current(self) -> Screen:
        return self._current

    def go(self, screen: Screen | int) -> Screen:
        """Show ``screen`` and return it. Unknown screens raise ValueError."""
        self._current = Screen(screen)
        log.debug("screen -> %s", self._current.name)
        return self._current

    def chapter_rows(self) -> list[ChapterRow]:
        """The picker's rows, one per chapter, with the active one marked."""
        active = self._book.active_chapter()
        rows = []
        for index in range(self._book.chapter_count()):
            name = self._book.chapter_name(index)
            if name is None:
                continue
            rows.append(
                ChapterRow(
                    index=index,
                    number=f"{index + 1:02d}",
                    name=name,
                    active=index == active,
                )
            )
        return rows

    def pick_chapter(self, index: int) -> Screen:
        """Make ``index`` the active chapter and return to the ready screen.

        An out-of-range index leaves the active chapter as it was.
        """
        self._book.set_active_chapter(index)
        return self.go(Screen.READY)

    def add_chapter(self) -> int | None:
        """Add a chapter, make it active and redraw the picker.

        Returns the new chapter's index, or None when the book is full.
        """
        try:
            index: int | None = self._book.add_chapter()
        except BookFullError as exc:
            log.info("cannot add chapter: %s", exc)
            index = None
        if index is not None:
            self._book.set_active_chapter(index)
        self.go(Screen.CHAPTER_PICKER)
        return index

    def chapter_banner(self) -> tuple[str, str]:
        """The banner heading and title for the active chapter."""
        active = self._book.active_chapter()
        name = self._book.chapter_name(active)
        return chapter_label(active), name if name else FALLBACK_CHAPTER_NAME