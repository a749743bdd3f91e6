from __future__ import annotations

from ..domain.models import GenerationRange
from ..infrastructure.document import Document


class RangeTracker:
    """Keeps the displayed candidate's span in sync with the document.

    ``start`` is read from the cursor exactly once, when a generation
    begins; the cursor keeps moving while text streams in, so it is never
    read again for the start of the span.
    """

    def __init__(self, document: Document) -> None:
        self.document = document

    def capture_start(self) -> int:
        return self.document.cursor_position()

    def close(self, start: int) -> GenerationRange:
        end = self.document.cursor_position()
        if end < start:
            end = start
        return GenerationRange(start, end)

    def swap(self, span: GenerationRange, text: str) -> GenerationRange:
        self.document.replace_range(span.start, span.end, text)
        return span.with_text(text)

    def holds(self, span: GenerationRange, text: str) -> bool:
        return self.document.current_text()[span.start : span.end] == text
