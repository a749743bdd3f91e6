from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..errors import ServiceError
from .completion_ai import CompletionService, generate_title

logger = logging.getLogger("chronicle.insights")

TITLE_MIN_WORDS = 15
FALLBACK_TITLE_WORDS = 6

_TAG_RE = re.compile(r"<[^>]+>")


def plain_text(content: str) -> str:
    """Strip markup tags so counts reflect what the reader sees."""
    return _TAG_RE.sub(" ", content or "")


def _words(content: str) -> list[str]:
    return plain_text(content).split()


@dataclass(frozen=True)
class DocumentStats:
    characters: int
    words: int

    @classmethod
    def from_text(cls, content: str) -> "DocumentStats":
        text = _TAG_RE.sub("", content or "")
        return cls(characters=len(text), words=len(_words(content)))


def fallback_title(content: str) -> str:
    words = _words(content)
    return " ".join(words[:FALLBACK_TITLE_WORDS]) or "Untitled"


class TitleSuggester:
    """Suggests a document title once the draft is long enough.

    Runs at most once, and never after the user has typed their own title.
    """

    def __init__(self, service: CompletionService) -> None:
        self.service = service
        self.title: Optional[str] = None
        self.title_edited = False

    def set_title(self, title: str) -> None:
        self.title = title
        self.title_edited = True

    def should_suggest(self, content: str) -> bool:
        if self.title_edited or self.title:
            return False
        return len(_words(content)) >= TITLE_MIN_WORDS

    async def maybe_suggest(self, content: str) -> Optional[str]:
        if not self.should_suggest(content):
            return None
        try:
            suggestion = await generate_title(self.service, plain_text(content))
        except ServiceError as exc:
            logger.info("title_suggestion_failed", extra={"err": exc.message})
            suggestion = ""
        # The user may have typed a title while the request was in flight.
        if self.title_edited:
            return None
        self.title = suggestion or fallback_title(content)
        return self.title
