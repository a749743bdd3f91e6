from __future__ import annotations

from typing import Protocol


class Document(Protocol):
    def insert_character_at_cursor(self, ch: str) -> None: ...
    def replace_range(self, start: int, end: int, text: str) -> None: ...
    def current_text(self) -> str: ...
    def cursor_position(self) -> int: ...


class InMemoryDocument:
    """Plain-text document buffer with a single collapsed cursor.

    Stands in for the rich-text editor in scripts and tests.
    """

    def __init__(self, text: str = "", cursor: int | None = None) -> None:
        self._text = text
        self._cursor = len(text) if cursor is None else self._clamp(cursor)

    def _clamp(self, pos: int) -> int:
        return max(0, min(pos, len(self._text)))

    def insert_character_at_cursor(self, ch: str) -> None:
        pos = self._cursor
        self._text = self._text[:pos] + ch + self._text[pos:]
        self._cursor = pos + len(ch)

    def replace_range(self, start: int, end: int, text: str) -> None:
        if start > end:
            raise ValueError(f"Invalid range [{start}, {end})")
        start = self._clamp(start)
        end = self._clamp(end)
        self._text = self._text[:start] + text + self._text[end:]
        self._cursor = start + len(text)

    def current_text(self) -> str:
        return self._text

    def cursor_position(self) -> int:
        return self._cursor

    def move_cursor(self, pos: int) -> None:
        self._cursor = self._clamp(pos)

    def text_between(self, start: int, end: int) -> str:
        return self._text[start:end]

    def __len__(self) -> int:
        return len(self._text)
