from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, Field


class GenerationMode(str, Enum):
    CONTINUE = "continue"
    LINE = "line"
    PARAGRAPH = "paragraph"


class GenerationState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    REVIEWING = "reviewing"
    ERROR = "error"


Tone = Literal["professional", "creative", "casual", "academic"]
Length = Literal["short", "medium", "long"]


class UserSettings(BaseModel):
    tone: Tone = "creative"
    length: Length = Field(default="medium", description="Default continuation length")
    variant_count: int = Field(default=4, ge=1, le=4, description="Number of candidates per generation")


@dataclass(frozen=True)
class SamplingParams:
    """Per-request knobs handed to the completion service untouched."""

    temperature: float
    model: Optional[str] = None


@dataclass(frozen=True)
class GenerationRange:
    """Half-open document interval ``[start, end)`` held by the displayed candidate."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    def with_text(self, text: str) -> "GenerationRange":
        return GenerationRange(self.start, self.start + len(text))


@dataclass(frozen=True)
class GenerationContext:
    error: Optional[str] = None
    candidates: Tuple[str, ...] = field(default_factory=tuple)
    selected_index: int = 0
    generation_range: Optional[GenerationRange] = None

    @property
    def selected_candidate(self) -> Optional[str]:
        if not self.candidates:
            return None
        return self.candidates[self.selected_index]
